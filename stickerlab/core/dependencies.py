"""FastAPI dependencies shared by routers."""

import secrets
from typing import Annotated, Optional

from fastapi import Header, HTTPException, status

from stickerlab.config import settings


def require_admin(x_admin_key: Annotated[Optional[str], Header()] = None) -> None:
    """Guard admin routes with the configured admin key.

    When ``ADMIN_API_KEY`` is unset the check is disabled; user
    authentication is handled by the gateway in front of this service.

    Raises:
        HTTPException: 403 if the key is configured and the header does not match
    """
    expected = settings.admin_api_key
    if not expected:
        return
    if x_admin_key is None or not secrets.compare_digest(x_admin_key, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
