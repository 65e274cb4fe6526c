"""
mvdcoapp errors: a finite set of wire keys plus one exception type.

The extension renders localized messages from `key` (and `substitutions`);
the free-text `error` is diagnostic only.
"""

from __future__ import annotations

import errno
from enum import Enum


class ErrorKind(str, Enum):
    INVALID_REQUEST = "EINVAL"
    NOT_IMPLEMENTED = "ENOSYS"
    NOT_FOUND = "ENOENT"
    BINARY_NOT_FOUND = "binaryNotFound"
    PERMISSION = "directoryNotWritable"
    DISK_FULL = "ENOSPC"
    TIMEOUT = "ETIMEDOUT"
    USER_CANCELLED = "USER_CANCELLED"
    SPAWN_FAILED = "spawnFailed"
    PICKER_FAILED = "pickerCommandFailed"
    HELPER_NOT_FOUND = "fileDialogHelperNotFound"
    IO = "EIO"
    INTERNAL = "internalError"


ERRNO_KINDS = {
    errno.ENOENT: ErrorKind.NOT_FOUND,
    errno.ENOTDIR: ErrorKind.NOT_FOUND,
    errno.ELOOP: ErrorKind.NOT_FOUND,
    errno.EACCES: ErrorKind.PERMISSION,
    errno.EPERM: ErrorKind.PERMISSION,
    errno.EROFS: ErrorKind.PERMISSION,
    errno.ENOSPC: ErrorKind.DISK_FULL,
}


class CoAppError(Exception):
    """An error that maps to a structured response."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.INTERNAL, substitutions: list[str] | None = None):
        super().__init__(message)
        self.kind = kind
        self.substitutions = list(substitutions or [])

    @property
    def message(self) -> str:
        return str(self)

    def to_message(self) -> dict:
        return {
            "success": False,
            "error": self.message,
            "key": self.kind.value,
            "substitutions": self.substitutions,
        }


def wrap_error(err: BaseException, default: ErrorKind = ErrorKind.INTERNAL) -> CoAppError:
    """Classify an arbitrary exception, keeping CoAppErrors as they are."""
    if isinstance(err, CoAppError):
        return err
    if isinstance(err, OSError) and err.errno in ERRNO_KINDS:
        return CoAppError(str(err), ERRNO_KINDS[err.errno])
    return CoAppError(str(err) or type(err).__name__, default)
