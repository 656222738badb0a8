"""
Shared error types.

Every error carries a `user_message` suitable for showing as a single failure
notice at the operation boundary. Expected conditions (missing blob, empty AI
result) are not errors; they are returned as None.
"""


class OrbitError(Exception):
    """Base class for all Orbit Lite errors."""

    default_message = "Operation failed"

    def __init__(self, message: str = None, user_message: str = None):
        super().__init__(message or self.default_message)
        self.user_message = user_message or message or self.default_message


class ValidationError(OrbitError):
    """Rejected input (empty title, duplicate id, unknown entity)."""

    default_message = "Invalid input"


class StoreIOError(OrbitError):
    """Metadata store read or write failed."""

    default_message = "Could not read or write local data"


class BackupError(OrbitError):
    """Archive could not be produced or restored."""

    default_message = "Backup operation failed"


class BackupFormatError(BackupError):
    """Import archive is malformed or missing its data document."""

    default_message = "Invalid backup file"


class ZipSecurityError(BackupFormatError):
    """Raised when an archive fails zip safety checks."""

    default_message = "Backup file failed safety checks"


class TemplateEditError(OrbitError):
    """Template edit session used out of order."""

    default_message = "Template edit session error"
