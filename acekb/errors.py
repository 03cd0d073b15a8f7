"""Exception hierarchy for acekb."""


class AceKbError(Exception):
    """Base exception for acekb errors."""

    pass


class KnowledgeFileNotFoundError(AceKbError, FileNotFoundError):
    """A required input file (knowledge document) does not exist."""

    def __init__(self, path: object):
        super().__init__(f"Required file not found: {path}")
        self.path = path


class CodecError(AceKbError, ValueError):
    """Knowledge document text could not be parsed in strict mode."""

    def __init__(self, message: str, *, line_number: int | None = None):
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number


class DeltaQueueError(AceKbError):
    """Delta queue file exists but is not a readable JSON document."""

    pass


class ConfigError(AceKbError):
    """Configuration values failed validation."""

    pass
