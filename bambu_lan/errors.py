"""Exception hierarchy for bambu-lan.

Every error carries an operator-facing message describing what was expected
and what was found, plus structured attributes for programmatic handling.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence


class BambuError(RuntimeError):
    """Base class for all errors raised by bambu-lan."""


class ConfigurationError(BambuError):
    def __init__(self, missing: Sequence[str]) -> None:
        super().__init__(
            "Printer configuration is incomplete; missing "
            f"{', '.join(missing)}. Set them in the [printer] section or via "
            "BAMBU_HOST / BAMBU_ACCESS_CODE / BAMBU_SERIAL."
        )
        self.missing = list(missing)


# ----------------------------------------------------------------------
# Connection class
# ----------------------------------------------------------------------
class ConnectionFailedError(BambuError):
    """Raised when the printer broker cannot be reached."""


class ConnectionTimeout(ConnectionFailedError):
    def __init__(self, timeout: float, *, host: Optional[str] = None) -> None:
        target = f" to {host}" if host else ""
        super().__init__(
            f"MQTT connection{target} timed out after {timeout:g}s. "
            "Please check the printer IP and network connection."
        )
        self.timeout = timeout
        self.host = host


class ConnectionRefused(ConnectionFailedError):
    def __init__(self, message: str, *, rc: Optional[int] = None) -> None:
        super().__init__(message)
        self.rc = rc


class AuthenticationError(ConnectionFailedError):
    """Raised when the broker rejects the access code. Never retried."""

    def __init__(self, message: str, *, rc: Optional[int] = None) -> None:
        super().__init__(message)
        self.rc = rc


class NotConnectedError(BambuError):
    def __init__(self, channel: str = "MQTT") -> None:
        super().__init__(f"{channel} client is not connected")
        self.channel = channel


class SessionStateError(BambuError):
    """Raised on a session state change that skips a step."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move session from {current} to {requested}")
        self.current = current
        self.requested = requested


# ----------------------------------------------------------------------
# Protocol class
# ----------------------------------------------------------------------
class CommandResponseTimeout(BambuError):
    label = "Command response"

    def __init__(self, timeout: float, *, sequence_id: Optional[str] = None) -> None:
        suffix = f" (sequence_id={sequence_id})" if sequence_id is not None else ""
        super().__init__(f"{self.label} timeout after {timeout:g}s{suffix}")
        self.timeout = timeout
        self.sequence_id = sequence_id


class StatusTimeout(CommandResponseTimeout):
    label = "Status request"


class ConcurrentWaitError(BambuError):
    """Raised when a second correlated wait overlaps an outstanding one."""

    def __init__(self, outstanding: str) -> None:
        super().__init__(
            "A response wait is already outstanding on this session "
            f"(sequence_id={outstanding}); wait for it to finish first"
        )
        self.outstanding = outstanding


class TelemetryParseError(BambuError):
    """Raised for inbound payloads that are not JSON objects."""


# ----------------------------------------------------------------------
# Validation class (sliced file contents)
# ----------------------------------------------------------------------
class FilamentDataError(BambuError):
    """Base for sliced-file validation failures."""


class InvalidArchive(FilamentDataError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Failed to read .3mf file: Not a valid ZIP archive. {reason}")
        self.reason = reason


class MissingSliceData(FilamentDataError):
    def __init__(self, entry: str) -> None:
        super().__init__(
            f"Failed to parse .3mf file: {entry} not found. This file may not be "
            "a sliced .3mf file, or may be corrupted."
        )
        self.entry = entry


class MissingDirective(FilamentDataError):
    def __init__(self, directive: str, hint: str = "") -> None:
        message = f'Failed to parse gcode: "; {directive}" line not found in header.'
        if hint:
            message = f"{message} {hint}"
        super().__init__(message)
        self.directive = directive


class InvalidSlotNumber(FilamentDataError):
    def __init__(self, value: str, *, minimum: int = 1, maximum: int = 4) -> None:
        super().__init__(
            f'Invalid AMS slot number: "{value}". Must be {minimum}-{maximum}.'
        )
        self.value = value
        self.minimum = minimum
        self.maximum = maximum


class ProfileIndexOutOfRange(FilamentDataError):
    def __init__(self, index: int, slot_number: int, available: int) -> None:
        super().__init__(
            f"Invalid profile index {index} for slot {slot_number}. "
            f"Only {available} profiles embedded in file."
        )
        self.index = index
        self.slot_number = slot_number
        self.available = available


# ----------------------------------------------------------------------
# Reconciliation class
# ----------------------------------------------------------------------
class FilamentNotFound(BambuError):
    def __init__(self, profile: Any, available: str) -> None:
        super().__init__(
            f"Filament not found in AMS: Need {profile.type} ({profile.colour}) "
            f"for profile {profile.index}. Available: {available}"
        )
        self.profile = profile
        self.available = available


class MaterialBayNotDetected(BambuError):
    def __init__(self) -> None:
        super().__init__(
            "Auto-detect enabled but AMS not detected. The printer status query did "
            "not return AMS data. Disable auto-detect and pass an explicit AMS "
            "mapping, or make sure the AMS is connected."
        )


# ----------------------------------------------------------------------
# Path-security class
# ----------------------------------------------------------------------
class PathSecurityError(BambuError, ValueError):
    """Base for rejected remote paths."""

    rule = "path"


class InvalidPathError(PathSecurityError):
    rule = "invalid"


class PathTraversalError(PathSecurityError):
    rule = "traversal"


class SystemDirectoryError(PathSecurityError):
    rule = "system-directory"

    def __init__(self, directory: str) -> None:
        super().__init__(
            f'Access to system directory "{directory}" is not allowed for security '
            "reasons. Only printer storage directories (/sdcard, /cache) are accessible."
        )
        self.directory = directory


class PathTooLongError(PathSecurityError):
    rule = "length"

    def __init__(self, kind: str, limit: int, actual: int) -> None:
        super().__init__(
            f"{kind} too long. Maximum {limit} characters allowed. "
            f"Provided: {actual} characters."
        )
        self.limit = limit
        self.actual = actual


class InvalidCharactersError(PathSecurityError):
    rule = "characters"


class HiddenPathError(PathSecurityError):
    rule = "hidden"


# ----------------------------------------------------------------------
# File transfer
# ----------------------------------------------------------------------
class TransferError(BambuError):
    """Raised when an FTPS operation fails."""


class TransferConnectionError(TransferError):
    def __init__(self, host: str, port: int, reason: str) -> None:
        super().__init__(f"Failed to connect to FTP server at {host}:{port}: {reason}")
        self.host = host
        self.port = port


class TransferAuthError(TransferError):
    def __init__(self) -> None:
        super().__init__(
            "FTP authentication failed. Please verify your access code in the credentials."
        )


class TransferPermissionDenied(TransferError):
    def __init__(self, path: str) -> None:
        super().__init__(
            "Permission denied. The printer may not allow file uploads to this "
            f"location: {path}"
        )
        self.path = path


class RemoteFileNotFound(TransferError):
    def __init__(self, path: str) -> None:
        super().__init__(
            f"File not found: {path}. Make sure the .3mf file exists on the printer's SD card."
        )
        self.path = path


class DownloadTimeout(TransferError):
    def __init__(self, path: str) -> None:
        super().__init__(
            f"Download timeout: {path} took too long to download. The file may be "
            "very large or the connection is slow."
        )
        self.path = path


class UnknownOperationError(BambuError):
    def __init__(self, resource: str, operation: Optional[str] = None,
                 *, known: Sequence[str] = ()) -> None:
        if operation is None:
            message = f'Unknown resource "{resource}"'
        else:
            message = f'Unknown operation "{operation}" for resource "{resource}"'
        if known:
            message = f"{message}. Expected one of: {', '.join(sorted(known))}"
        super().__init__(message)
        self.resource = resource
        self.operation = operation
