"""Filename-based file classification."""

from __future__ import annotations

import mimetypes
import posixpath

BINARY_EXTENSIONS: frozenset[str] = frozenset(
    {
        "3gp", "7z", "a", "aac", "aar", "aee", "aiff", "amr", "ape", "apk",
        "app", "asf", "au", "avi", "bin", "bmp", "bz2", "class", "com", "deb",
        "dll", "dmg", "doc", "docx", "dts", "dvi", "elf", "exe", "exp", "f4v",
        "flac", "flv", "fmt", "gif", "gz", "gzip", "ico", "ipa", "iso", "iz",
        "jar", "jpeg", "jpg", "ko", "lib", "lz", "lz4", "lzma", "lzo", "m4a",
        "m4v", "mkv", "mov", "mp3", "mp4", "mpeg", "mpg", "msi", "o", "obj",
        "odf", "odg", "odp", "ods", "odt", "ogg", "ogv", "opus", "otf", "pdf",
        "pim", "pkg", "png", "pps", "ppt", "pptx", "ps", "pyc", "pyo", "rar",
        "rm", "rmvb", "rpm", "rtf", "so", "svg", "swf", "tar", "tec", "tfm",
        "tiff", "ttf", "war", "wasm", "wav", "webm", "webp", "wma", "wmv",
        "woff", "woff2", "xdv", "xip", "xls", "xlsx", "z", "zip", "zstd",
        # CRDT document snapshots
        "snapshot", "yjs",
    }
)  # fmt: skip

# Workspace-internal paths that never leave the file store in plain exports.
TEMPORARY_PATH_PREFIXES: tuple[str, ...] = (
    "/.texlyre",
    "/.git",
    "/.svn",
    "/node_modules",
    "/.DS_Store",
)

_EXTRA_MIME_TYPES = {
    "tex": "text/x-tex",
    "bib": "text/x-bibtex",
    "sty": "text/x-tex",
    "cls": "text/x-tex",
    "typ": "text/x-typst",
    "md": "text/markdown",
}


def file_extension(file_name: str) -> str:
    """Return the lowercase extension of the last path segment, without the dot."""
    base = posixpath.basename(file_name)
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[1].lower()


def is_binary_file(file_name: str) -> bool:
    """Classify a file as binary by extension.

    Storage adapters use this to decide whether ``read_file`` returns ``bytes``
    or decoded text, so callers never choose.
    """
    return file_extension(file_name) in BINARY_EXTENSIONS


def get_mime_type(file_name: str) -> str:
    """Guess a MIME type, falling back to ``application/octet-stream``."""
    ext = file_extension(file_name)
    if ext in _EXTRA_MIME_TYPES:
        return _EXTRA_MIME_TYPES[ext]
    guessed, _ = mimetypes.guess_type(posixpath.basename(file_name))
    if guessed:
        return guessed
    return "application/octet-stream" if ext in BINARY_EXTENSIONS else "text/plain"


def is_temporary_file(path: str) -> bool:
    """Return True for workspace-internal paths (VCS metadata, caches)."""
    normalized = path if path.startswith("/") else f"/{path}"
    return any(normalized.startswith(prefix) for prefix in TEMPORARY_PATH_PREFIXES)
