"""Content classification for uploads.

libmagic decides first; the declared filename only breaks ties when the
bytes say nothing specific. Only the first ``SNIFF_LENGTH`` bytes are
inspected so the result depends on nothing but the head and the name.
"""
import mimetypes
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional, Tuple

import magic

from app.models.records import Kind
from logger_config import setup_logger

logger = setup_logger()

SNIFF_LENGTH = 8192

OCTET_STREAM = "application/octet-stream"
TEXT_PLAIN = "text/plain"
GENERIC_TYPES = {OCTET_STREAM, TEXT_PLAIN}
# What libmagic reports for an empty buffer
EMPTY_TYPES = {"application/x-empty", "inode/x-empty"}
# Container formats whose real type is better told by the extension (docx, jar, ...)
CONTAINER_TYPES = {"application/zip"}

TEXTUAL_APPLICATION_TYPES = {
    "application/json",
    "application/xml",
    "application/javascript",
    "application/x-javascript",
    "application/x-sh",
    "application/x-httpd-php",
    "application/sql",
    "application/toml",
    "application/yaml",
    "application/x-yaml",
    "application/typescript",
}

CODE_EXTENSIONS = {
    "txt", "log", "md", "rst", "csv", "tsv", "diff", "patch",
    "py", "pyi", "rs", "go", "c", "h", "cc", "cpp", "hpp", "cs", "java", "kt",
    "kts", "scala", "swift", "rb", "php", "pl", "lua", "r", "dart", "ex", "exs",
    "hs", "ml", "nim", "zig", "sql", "ps1", "js", "mjs", "cjs", "jsx", "ts",
    "tsx", "vue", "svelte", "html", "htm", "css", "scss", "sass", "less", "xml",
    "json", "yaml", "yml", "toml", "ini", "cfg", "conf", "env", "dockerfile",
    "makefile", "gradle", "tex", "bib",
}

# Built-in table only, so guesses do not depend on the host's mime.types
_mime_db = mimetypes.MimeTypes()
for _type, _ext in (
    ("text/x-rust", ".rs"),
    ("text/x-go", ".go"),
    ("text/x-kotlin", ".kt"),
    ("text/x-scala", ".scala"),
    ("text/x-swift", ".swift"),
    ("text/x-ruby", ".rb"),
    ("text/x-lua", ".lua"),
    ("text/x-php", ".php"),
    ("text/x-typescript", ".ts"),
    ("text/x-typescript", ".tsx"),
    ("text/jsx", ".jsx"),
    ("text/markdown", ".md"),
    ("text/x-rst", ".rst"),
    ("application/toml", ".toml"),
    ("application/yaml", ".yaml"),
    ("application/yaml", ".yml"),
    ("application/sql", ".sql"),
    ("text/x-dart", ".dart"),
    ("text/x-vue", ".vue"),
    ("text/x-scss", ".scss"),
):
    _mime_db.add_type(_type, _ext)


@dataclass(frozen=True)
class Classification:
    kind: Kind
    content_type: str
    extension: str


def extension_of(filename: Optional[str]) -> str:
    """Lower-cased extension of the declared filename, or ``""``."""
    if not filename:
        return ""
    name = PurePosixPath(filename.replace("\\", "/")).name
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].strip().lower()


def _decodes_as_text(head: bytes) -> bool:
    if b"\x00" in head:
        return False
    try:
        head.decode("utf-8")
    except UnicodeDecodeError as e:
        # A multi-byte character cut off by the sniff window is still text
        return e.reason == "unexpected end of data" and e.start >= len(head) - 3
    return True


def sniff(head: bytes) -> str:
    """Content type libmagic reports for ``head``, or a generic type."""
    if not head:
        return OCTET_STREAM
    try:
        content_type = magic.from_buffer(head, mime=True)
    except magic.MagicException as e:
        logger.error(f"libmagic failed to identify upload: {e}")
        return OCTET_STREAM
    content_type = (content_type or OCTET_STREAM).split(";", 1)[0].strip().lower()
    if content_type in EMPTY_TYPES:
        return OCTET_STREAM
    if content_type == OCTET_STREAM and _decodes_as_text(head):
        return TEXT_PLAIN
    return content_type


def guess_from_extension(extension: str) -> Optional[str]:
    if not extension:
        return None
    guessed, _ = _mime_db.guess_type(f"file.{extension}", strict=False)
    return guessed


PREFERRED_EXTENSIONS = {
    TEXT_PLAIN: "txt",
    OCTET_STREAM: "bin",
    "image/jpeg": "jpg",
    "image/x-icon": "ico",
    "audio/mpeg": "mp3",
    "video/mp4": "mp4",
    "application/x-sh": "sh",
    "text/x-shellscript": "sh",
    "application/x-dosexec": "exe",
}


def default_extension(content_type: str) -> str:
    """Extension for an upload that declared none."""
    if content_type in PREFERRED_EXTENSIONS:
        return PREFERRED_EXTENSIONS[content_type]
    guessed = _mime_db.guess_extension(content_type, strict=False)
    return guessed.lstrip(".") if guessed else "bin"


def is_textual(content_type: str) -> bool:
    return content_type.startswith("text/") or content_type in TEXTUAL_APPLICATION_TYPES


def _resolve_type(head: bytes, extension: str) -> Tuple[str, bool]:
    """Return the content type and whether the sniff was generic."""
    sniffed = sniff(head)
    if sniffed not in GENERIC_TYPES and sniffed not in CONTAINER_TYPES:
        return sniffed, False

    guessed = guess_from_extension(extension)
    if sniffed == TEXT_PLAIN:
        # Text content only takes a textual guess (.png full of text stays text)
        if guessed and is_textual(guessed):
            return guessed, True
        return TEXT_PLAIN, True
    if sniffed in CONTAINER_TYPES:
        if guessed and guessed not in GENERIC_TYPES:
            return guessed, False
        return sniffed, False
    return guessed or OCTET_STREAM, True


def classify(head: bytes, declared_filename: Optional[str]) -> Classification:
    """Classify an upload from its first bytes and declared filename."""
    head = head[:SNIFF_LENGTH]
    extension = extension_of(declared_filename)
    content_type, generic = _resolve_type(head, extension)

    if content_type.startswith("image/"):
        kind = Kind.IMAGE
    elif is_textual(content_type) or (generic and extension in CODE_EXTENSIONS):
        kind = Kind.TEXT
    else:
        kind = Kind.FILE

    if not extension:
        extension = default_extension(content_type)
    return Classification(kind=kind, content_type=content_type, extension=extension)
