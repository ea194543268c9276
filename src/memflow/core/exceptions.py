"""Exception hierarchy for memflow."""

from typing import Any


class MemflowError(Exception):
    """Base class for all memflow errors.

    Attributes:
        message: Human readable message.
        code: Stable machine readable code.
        details: Extra structured context.
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message


class MemoryNotFoundError(MemflowError, LookupError):
    """An operation referenced a memory id that does not exist."""

    def __init__(self, memory_id: str, code: str = "MEMORY_NOT_FOUND") -> None:
        super().__init__(f"Memory not found: {memory_id}", code, {"id": memory_id})
        self.memory_id = memory_id


class InvalidMemoryTypeError(MemflowError, ValueError):
    """A store call carried an unrecognized memory type."""

    def __init__(self, memory_type: Any, code: str = "INVALID_MEMORY_TYPE") -> None:
        super().__init__(
            f"Invalid memory type: {memory_type!r}",
            code,
            {"type": str(memory_type)},
        )
        self.memory_type = memory_type


class DimensionMismatchError(MemflowError, ValueError):
    """Vector-bearing payloads disagree on dimensionality."""

    def __init__(self, expected: int, actual: int, code: str = "DIMENSION_MISMATCH") -> None:
        super().__init__(
            f"Expected dimension {expected}, got {actual}",
            code,
            {"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class StorageBackendError(MemflowError):
    """A storage or index backend call failed."""

    def __init__(
        self,
        message: str = "Storage backend failure",
        code: str = "STORAGE_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code, details)


class ListenerError(MemflowError):
    """A context-change listener raised.

    Never propagated to callers of ``set_context``; built only so the
    failure can be logged with a consistent shape.
    """

    def __init__(self, key: str, cause: BaseException, code: str = "LISTENER_ERROR") -> None:
        super().__init__(
            f"Context listener failed for key {key!r}: {cause}",
            code,
            {"key": key, "cause": repr(cause)},
        )
        self.key = key
        self.cause = cause
