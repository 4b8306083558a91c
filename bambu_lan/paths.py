"""Sanitisation of user-supplied remote paths before they reach the printer.

Every path handed to the file-transfer client passes through :func:`validate`
or one of the stricter helpers here. Failures raise a
:class:`~bambu_lan.errors.PathSecurityError` subclass naming the rule that
rejected the input.
"""

from __future__ import annotations

import posixpath
import re
from urllib.parse import unquote

from .errors import (
    HiddenPathError,
    InvalidCharactersError,
    InvalidPathError,
    PathTooLongError,
    PathTraversalError,
    SystemDirectoryError,
)

MAX_PATH_LENGTH = 4096
MAX_FILENAME_LENGTH = 255

BLOCKED_PATHS = (
    "/etc",
    "/sys",
    "/proc",
    "/root",
    "/boot",
    "/dev",
    "/var",
    "/usr",
    "/bin",
    "/sbin",
    "/lib",
    "/tmp",
    "\\windows",
    "\\system32",
    "\\program files",
)

HIDDEN_ALLOWED_SUFFIX = re.compile(r"\.(3mf|gcode)$", re.IGNORECASE)
INVALID_FILENAME_CHARS = re.compile(r'[\x00-\x1f\x7f<>:"|?*]')
_WINDOWS_TRAVERSAL = re.compile(r"\.\.[/\\]")


def sanitize_path(user_path: str) -> str:
    """Return ``user_path`` normalised, or raise if it is unsafe.

    >>> sanitize_path("/sdcard/./model.3mf")
    '/sdcard/model.3mf'
    """

    if not user_path or not isinstance(user_path, str):
        raise InvalidPathError("Path must be a non-empty string")
    if len(user_path) > MAX_PATH_LENGTH:
        raise PathTooLongError("Path", MAX_PATH_LENGTH, len(user_path))

    sanitized = user_path.replace("\0", "")
    # Decode twice so double-encoded input (%252e) cannot hide a traversal.
    sanitized = unquote(unquote(sanitized))

    if (
        sanitized.startswith("./")
        or sanitized.startswith("../")
        or "/../" in sanitized
    ):
        raise PathTraversalError(
            "Path traversal detected. Use absolute paths starting with / "
            "(e.g., /sdcard/file.3mf) or filename only."
        )

    normalized = posixpath.normpath(sanitized)
    if normalized != "/":
        normalized = normalized.rstrip("/") or "/"

    if ".." in normalized:
        raise PathTraversalError(
            'Path traversal detected. Paths containing ".." are not allowed for '
            "security reasons. Use absolute paths starting with / or filename only."
        )
    if "\\.." in normalized or _WINDOWS_TRAVERSAL.search(user_path):
        raise PathTraversalError(
            'Path traversal detected (Windows-style). Paths containing "..\\" are not allowed.'
        )

    if normalized.startswith("/") or "\\" in user_path:
        lower_normalized = normalized.lower()
        lower_input = user_path.lower()
        for blocked in BLOCKED_PATHS:
            if lower_normalized.startswith(blocked) or lower_input.startswith(blocked):
                raise SystemDirectoryError(blocked)

    for component in normalized.split("/"):
        if component.startswith(".") and not HIDDEN_ALLOWED_SUFFIX.search(component):
            raise HiddenPathError(
                f'Hidden files/directories (starting with ".") are not allowed: "{component}"'
            )

    return normalized


def sanitize_filename(filename: str) -> str:
    """Validate a bare file name (no directories)."""

    if not filename or not isinstance(filename, str):
        raise InvalidPathError("Filename must be a non-empty string")
    if len(filename) > MAX_FILENAME_LENGTH:
        raise PathTooLongError("Filename", MAX_FILENAME_LENGTH, len(filename))

    sanitized = filename.replace("\0", "")

    if "/" in sanitized or "\\" in sanitized:
        raise InvalidCharactersError(
            "Path separators (/ or \\) are not allowed in filenames. "
            "Provide filename only, not a path."
        )
    if sanitized in (".", "..", ""):
        raise InvalidPathError(f'Invalid filename: "{sanitized}"')
    if sanitized.startswith("."):
        raise HiddenPathError('Hidden filenames (starting with ".") are not allowed')
    if INVALID_FILENAME_CHARS.search(sanitized):
        raise InvalidCharactersError(
            "Filename contains invalid characters. "
            "Only alphanumeric, dash, underscore, and dot are allowed."
        )
    return sanitized


def validate(user_path: str) -> str:
    """Sanitise as a path when it has separators, otherwise as a file name."""

    if "/" in user_path or "\\" in user_path:
        return sanitize_path(user_path)
    return sanitize_filename(user_path)


def _is_within(base: str, candidate: str) -> bool:
    return candidate == base or candidate.startswith(base.rstrip("/") + "/")


def validate_within_bounds(base_path: str, user_path: str) -> str:
    """Resolve ``user_path`` against ``base_path`` and require it to stay inside."""

    sanitized = sanitize_path(user_path)
    resolved_base = posixpath.normpath(posixpath.join("/", base_path))
    resolved = posixpath.normpath(posixpath.join(resolved_base, sanitized))

    if not _is_within(resolved_base, resolved):
        raise PathTraversalError(
            f'Path "{user_path}" escapes allowed directory "{base_path}". '
            f'Resolved to: "{resolved}"'
        )
    return resolved


def safe_join(base_path: str, user_path: str) -> str:
    """Join a user path component onto ``base_path`` without escaping it."""

    cleaned = user_path[2:] if user_path.startswith("./") else user_path
    sanitized = sanitize_path(cleaned)

    joined = posixpath.join(base_path, sanitized.lstrip("/"))
    normalized_base = posixpath.normpath(base_path)
    if not _is_within(normalized_base, posixpath.normpath(joined)):
        raise PathTraversalError(
            f'Joined path "{joined}" escapes base directory "{base_path}"'
        )
    return joined
