"""Content hashing, naming, tagging and category inference for design assets.

Everything in this module is pure: the same inputs always produce the same
outputs (except ``generate_asset_id``, which embeds the current time).
"""

import hashlib
import posixpath
import re
import time
from typing import Any

# Ordered (needle, category) rules, first match wins. Needles are matched
# against the lowercased directory part of the path, wrapped in slashes.
CATEGORY_RULES: tuple[tuple[str, str], ...] = (
    ("/icons/", "icons"),
    ("/abstract", "abstract"),
    ("/geometric", "geometric"),
    ("/hand-drawn", "hand-drawn"),
    ("/ink", "ink"),
    ("/masks", "masks"),
    ("/separators", "separators"),
    ("/grunge", "grunge"),
)

# Ordered (keywords, subcategory) rules matched against the lowercased filename
SUBCATEGORY_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("heart",), "hearts"),
    (("star",), "stars"),
    (("arrow",), "arrows"),
    (("line",), "lines"),
    (("circle",), "circles"),
    (("square", "rect"), "rectangles"),
    (("triangle",), "triangles"),
    (("flower",), "flowers"),
    (("leaf",), "nature"),
    (("brush",), "brushes"),
)

# Folder names too generic to be useful as tags
IGNORED_PATH_SEGMENTS = frozenset({"stock", "shapes"})

MIN_TAG_LENGTH = 3

MIME_TYPES = {
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

DEFAULT_MIME_TYPE = "application/octet-stream"

_PERSISTENT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def compute_hash(content: str | bytes) -> str:
    """Return the SHA-256 hex digest of asset content (text is UTF-8 encoded)."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def is_persistent_id(value: Any) -> bool:
    """Check whether a value is a saved record identifier (24 hex characters).

    Unsaved designs carry placeholder IDs such as ``"project-1700000000000"``;
    those are never written into usage history.
    """
    return isinstance(value, str) and bool(_PERSISTENT_ID_RE.match(value))


def to_base36(number: int) -> str:
    if number < 0:
        raise ValueError("number must be non-negative")
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def split_asset_path(original_path: str) -> tuple[str, str]:
    """Split an asset path into its filename and its filename without extension.

    Args:
        original_path: Path or URL the asset was found at

    Returns:
        tuple[str, str]: ``(filename, stem)``
    """
    filename = posixpath.basename(original_path.replace("\\", "/"))
    stem, _ = posixpath.splitext(filename)
    return filename, stem


def human_readable_name(original_path: str) -> str:
    """Turn ``stock/icons/heart_outline-2.svg`` into ``heart outline 2``."""
    _, stem = split_asset_path(original_path)
    return re.sub(r"[-_]", " ", stem)


def generate_asset_id(category: str | None, name: str, suffix: str | None = None) -> str:
    """Generate a human-readable asset identifier.

    The identifier is ``<category>-<sanitized name>-<base36 ms timestamp>``,
    optionally followed by ``-<suffix>`` when a collision has to be avoided.

    Args:
        category: Asset category (``other`` if not given)
        name: Filename without extension
        suffix: Optional disambiguating suffix

    Returns:
        str: Asset identifier
    """
    clean_name = re.sub(r"[^a-z0-9]", "-", name.lower())
    timestamp = to_base36(int(time.time() * 1000))
    asset_id = f"{category or 'other'}-{clean_name}-{timestamp}"
    if suffix:
        asset_id = f"{asset_id}-{suffix}"
    return asset_id


def generate_tags(original_path: str) -> list[str]:
    """Derive searchable tags from the folders and filename of an asset path.

    Folder segments are lowercased with ``-``/``_`` turned into spaces, the
    generic ``stock``/``shapes`` folders are skipped, and the filename is split
    on separators. Tokens shorter than three characters are dropped.

    Args:
        original_path: Path the asset was found at

    Returns:
        list[str]: Deduplicated tags in discovery order
    """
    tags: dict[str, None] = {}

    segments = [part for part in original_path.replace("\\", "/").split("/") if part]
    for segment in segments[:-1]:
        if segment.lower() in IGNORED_PATH_SEGMENTS:
            continue
        tag = re.sub(r"[-_]", " ", segment.lower()).strip()
        if len(tag) >= MIN_TAG_LENGTH:
            tags[tag] = None

    _, stem = split_asset_path(original_path)
    for token in re.split(r"[-_\s]+", stem):
        if len(token) >= MIN_TAG_LENGTH:
            tags[token.lower()] = None

    return list(tags)


def generate_auto_tags(content: str, mime_type: str) -> list[str]:
    """Sniff content for shape and complexity tags.

    Only SVG markup is analysed; other content types get no auto tags.
    """
    if mime_type != "image/svg+xml":
        return []

    auto_tags = ["svg", "vector"]
    if "<circle" in content:
        auto_tags.append("circle")
    if "<rect" in content:
        auto_tags.append("rectangle")
    if "<path" in content:
        auto_tags.append("path")
    if "<polygon" in content:
        auto_tags.append("polygon")
    if "stroke" in content:
        auto_tags.append("outline")
    if "fill" in content:
        auto_tags.append("filled")

    path_count = content.count("<path")
    if path_count > 5:
        auto_tags.append("complex")
    elif path_count <= 2:
        auto_tags.append("simple")

    return auto_tags


def detect_category(original_path: str) -> str:
    """Infer an asset category from folder names in its path."""
    directory = posixpath.dirname(original_path.replace("\\", "/").lower()).strip("/")
    if not directory:
        return "other"
    directory = f"/{directory}/"
    for needle, category in CATEGORY_RULES:
        if needle in directory:
            return category
    return "other"


def detect_subcategory(original_path: str) -> str | None:
    """Infer a subcategory from keywords in the filename."""
    filename, _ = split_asset_path(original_path)
    filename = filename.lower()
    for keywords, subcategory in SUBCATEGORY_RULES:
        if any(keyword in filename for keyword in keywords):
            return subcategory
    return None


def guess_mime_type(file_path: str) -> str:
    """Map a file extension to a MIME type."""
    _, ext = posixpath.splitext(file_path.split("?", 1)[0].lower())
    return MIME_TYPES.get(ext, DEFAULT_MIME_TYPE)


def is_text_mime_type(mime_type: str) -> bool:
    """Whether content of this type is stored inline as text rather than base64."""
    return mime_type == "image/svg+xml" or mime_type.startswith("text/")


def extension_for_mime_type(mime_type: str) -> str:
    for ext, known in MIME_TYPES.items():
        if known == mime_type:
            return ext
    return ".bin"
