"""Media type categorisation for library items.

The extension recorded in the sidecar decides the category; when it is not
one we know, the media file itself is sniffed with libmagic so content with a
missing or odd extension still lands in the right bucket.
"""
from pathlib import Path
from typing import Optional
import magic

IMAGE_EXTS = frozenset({"jpg", "jpeg", "png", "gif", "bmp", "tiff", "tif", "webp", "heic", "heif", "avif", "svg"})
VIDEO_EXTS = frozenset({"mp4", "avi", "mov", "wmv", "flv", "webm", "mkv", "m4v"})
AUDIO_EXTS = frozenset({"mp3", "wav", "flac", "aac", "ogg", "opus", "wma", "m4a"})
DOCUMENT_EXTS = frozenset({"pdf", "epub", "txt", "md", "doc", "docx", "rtf"})

MEDIA_TYPES = ("image", "video", "audio", "document", "unknown")


def type_from_extension(ext: Optional[str]) -> str:
    """Map a file extension (with or without the dot) to a media type.

    Examples:
        >>> type_from_extension('JPG')
        'image'
        >>> type_from_extension('.flac')
        'audio'
        >>> type_from_extension('xyz')
        'unknown'
    """
    if not ext:
        return "unknown"
    e = ext.lower().lstrip(".")
    if e in IMAGE_EXTS:
        return "image"
    if e in VIDEO_EXTS:
        return "video"
    if e in AUDIO_EXTS:
        return "audio"
    if e in DOCUMENT_EXTS:
        return "document"
    return "unknown"


def detect_mime_type(file_path: str) -> Optional[str]:
    """Detect the MIME type of a file from its magic bytes, or None."""
    try:
        return magic.from_file(file_path, mime=True)
    except (OSError, magic.MagicException):
        return None


def get_file_category(mime_type: Optional[str]) -> str:
    """Categorize a MIME type into a media type.

    Examples:
        >>> get_file_category('image/jpeg')
        'image'
        >>> get_file_category('application/pdf')
        'document'
        >>> get_file_category('application/octet-stream')
        'unknown'
    """
    if not mime_type:
        return "unknown"
    if mime_type.startswith("image/"):
        return "image"
    if mime_type.startswith("video/"):
        return "video"
    if mime_type.startswith("audio/"):
        return "audio"
    if mime_type.startswith("text/") or mime_type in ("application/pdf", "application/epub+zip"):
        return "document"
    return "unknown"


def resolve_media_type(declared: Optional[str], ext: Optional[str], media_path: Optional[Path] = None) -> str:
    """Pick the media type for an item.

    An explicit, known type from the sidecar wins; then the extension; then a
    magic-byte sniff of the media file when one is available.
    """
    if declared:
        d = str(declared).strip().lower()
        if d in MEDIA_TYPES and d != "unknown":
            return d
    by_ext = type_from_extension(ext)
    if by_ext != "unknown":
        return by_ext
    if media_path is not None and media_path.is_file():
        return get_file_category(detect_mime_type(str(media_path)))
    return "unknown"
