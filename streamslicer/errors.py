"""Typed errors shared by the ledger, the analyzer and the API."""
from enum import Enum


class ErrorKind(str, Enum):
    """Stable error codes surfaced to clients."""
    CONFIGURATION = "configuration"
    AUTHORIZATION = "authorization"
    PROCESSING = "processing"
    PARSE = "parse"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVALID_FILE = "invalid_file"
    FILE_TOO_LARGE = "file_too_large"
    LEDGER_WRITE = "ledger_write"
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


class StreamSlicerError(Exception):
    """Base error. Carries the kind and the HTTP status it maps to."""

    kind: ErrorKind = ErrorKind.PROCESSING
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ============= Analysis =============

class AnalysisError(StreamSlicerError):
    """Any failure that aborts an analysis."""


class ConfigurationError(AnalysisError):
    kind = ErrorKind.CONFIGURATION
    status_code = 503


class AuthorizationError(AnalysisError):
    """Remote service rejected our credential or the connection."""
    kind = ErrorKind.AUTHORIZATION
    status_code = 502


class ProcessingError(AnalysisError):
    kind = ErrorKind.PROCESSING
    status_code = 502


class ParseError(AnalysisError):
    kind = ErrorKind.PARSE
    status_code = 502


class AnalysisTimeoutError(AnalysisError):
    kind = ErrorKind.TIMEOUT
    status_code = 504


class AnalysisCancelledError(AnalysisError):
    kind = ErrorKind.CANCELLED
    status_code = 409


# ============= Admission =============

class InsufficientBalanceError(StreamSlicerError):
    kind = ErrorKind.INSUFFICIENT_BALANCE
    status_code = 402

    def __init__(self, message: str, credits_needed: int = 0, credits_available: int = 0):
        super().__init__(message)
        self.credits_needed = credits_needed
        self.credits_available = credits_available


class InvalidFileError(StreamSlicerError):
    kind = ErrorKind.INVALID_FILE
    status_code = 415


class FileTooLargeError(StreamSlicerError):
    kind = ErrorKind.FILE_TOO_LARGE
    status_code = 413


# ============= Ledger =============

class LedgerWriteError(StreamSlicerError):
    """A credit grant or trial update could not be stored."""
    kind = ErrorKind.LEDGER_WRITE
    status_code = 500


class LedgerBackendError(StreamSlicerError):
    """Storage backend unreachable or returned an error."""
    kind = ErrorKind.LEDGER_UNAVAILABLE
    status_code = 503


# ============= Sessions =============

class SessionNotFoundError(StreamSlicerError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class SessionConflictError(StreamSlicerError):
    kind = ErrorKind.CONFLICT
    status_code = 409


class InvalidTransitionError(SessionConflictError):
    pass
