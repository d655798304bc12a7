"""Custom exceptions for statlake rollup and import operations."""


class StatlakeError(Exception):
    """Base exception for all statlake operations."""
    pass


class ConfigurationError(StatlakeError):
    """Raised when configuration values are missing or invalid."""
    pass


class FileProcessingError(StatlakeError):
    """Raised when a dump file cannot be opened or read."""
    pass


class DumpFormatError(StatlakeError):
    """Raised when a dump statement or row cannot be parsed."""
    pass


class DatabaseOperationError(StatlakeError):
    """Raised when database operations fail."""
    pass


class RollupIntegrityError(StatlakeError):
    """Raised when a merge would corrupt a rollup row's counters.

    Only the write for the offending bucket is aborted.
    """

    def __init__(self, message: str, key=None):
        super().__init__(message)
        self.key = key


class ImportJobError(StatlakeError):
    """Raised for unknown import jobs or invalid status transitions."""
    pass
