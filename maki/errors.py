"""Error taxonomy shared by the agent loop, the tools and the session."""

import enum


class ErrorKind(enum.Enum):
    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    TOOL_FAILURE = "tool_failure"
    VALIDATION = "validation"
    PERSISTENCE = "persistence"


class MakiError(Exception):
    """Base class for reportable runtime failures.

    Recovery decisions are made on ``kind``, never on the message text.
    """

    kind: ErrorKind = ErrorKind.TOOL_FAILURE

    def __init__(self, message: str, *, kind: ErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def message(self) -> str:
        return str(self)


class ConfigError(MakiError):
    """Raised for invalid configuration (missing API key, bad config file)."""

    kind = ErrorKind.CONFIGURATION


class TransportError(MakiError):
    """Raised when the model API is unreachable, times out, or rejects the call."""

    kind = ErrorKind.TRANSPORT


class ToolFailure(MakiError):
    """Raised by tool implementations when the operation itself fails."""

    kind = ErrorKind.TOOL_FAILURE


class ValidationError(MakiError):
    """Raised when tool arguments or paths are rejected before execution."""

    kind = ErrorKind.VALIDATION


class PersistenceError(MakiError):
    """Raised when the thread store cannot complete a read or write."""

    kind = ErrorKind.PERSISTENCE
