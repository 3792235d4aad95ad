"""Tagged domain errors and the success-or-failure result returned by every operation.

Operations never raise across their boundary. Internally a :class:`DomainFailure`
carries a :class:`DomainError` up to the boundary, where :func:`returns_result`
turns it into a failed :class:`Result`. Anything else that escapes (database,
Redis, network) is logged, reported to Sentry and surfaced as ``backend_failure``.
"""
import enum
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, ParamSpec, TypeVar

import sentry_sdk
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = ParamSpec("P")


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"
    BACKEND = "backend"


class ErrorCode(str, enum.Enum):
    INVALID_IDENTIFIER = "invalid_identifier"
    EMPTY_CONTENT = "empty_content"
    SELF_REQUEST = "self_request"
    SELF_CHAT = "self_chat"

    USER_NOT_FOUND = "user_not_found"
    CHAT_NOT_FOUND = "chat_not_found"
    MESSAGE_NOT_FOUND = "message_not_found"
    REQUEST_NOT_FOUND = "request_not_found"
    FRIENDSHIP_NOT_FOUND = "friendship_not_found"

    NOT_REQUEST_RECEIVER = "not_request_receiver"
    NOT_REQUEST_SENDER = "not_request_sender"
    NOT_CHAT_PARTICIPANT = "not_chat_participant"

    INVALID_STATE = "invalid_state"
    DUPLICATE_REQUEST = "duplicate_request"
    ALREADY_FRIENDS = "already_friends"
    ALREADY_EXISTS = "already_exists"

    BACKEND_FAILURE = "backend_failure"


_KINDS: dict[ErrorCode, ErrorKind] = {
    ErrorCode.INVALID_IDENTIFIER: ErrorKind.VALIDATION,
    ErrorCode.EMPTY_CONTENT: ErrorKind.VALIDATION,
    ErrorCode.SELF_REQUEST: ErrorKind.VALIDATION,
    ErrorCode.SELF_CHAT: ErrorKind.VALIDATION,
    ErrorCode.USER_NOT_FOUND: ErrorKind.NOT_FOUND,
    ErrorCode.CHAT_NOT_FOUND: ErrorKind.NOT_FOUND,
    ErrorCode.MESSAGE_NOT_FOUND: ErrorKind.NOT_FOUND,
    ErrorCode.REQUEST_NOT_FOUND: ErrorKind.NOT_FOUND,
    ErrorCode.FRIENDSHIP_NOT_FOUND: ErrorKind.NOT_FOUND,
    ErrorCode.NOT_REQUEST_RECEIVER: ErrorKind.UNAUTHORIZED,
    ErrorCode.NOT_REQUEST_SENDER: ErrorKind.UNAUTHORIZED,
    ErrorCode.NOT_CHAT_PARTICIPANT: ErrorKind.UNAUTHORIZED,
    ErrorCode.INVALID_STATE: ErrorKind.CONFLICT,
    ErrorCode.DUPLICATE_REQUEST: ErrorKind.CONFLICT,
    ErrorCode.ALREADY_FRIENDS: ErrorKind.CONFLICT,
    ErrorCode.ALREADY_EXISTS: ErrorKind.CONFLICT,
    ErrorCode.BACKEND_FAILURE: ErrorKind.BACKEND,
}


class DomainError(BaseModel):
    code: ErrorCode
    detail: str
    context: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @property
    def kind(self) -> ErrorKind:
        return _KINDS[self.code]


class DomainFailure(Exception):
    """Internal carrier for a :class:`DomainError`; never leaves an operation."""

    def __init__(self, error: DomainError):
        super().__init__(error.detail)
        self.error = error


def fail(code: ErrorCode, detail: str, **context: Any) -> DomainFailure:
    """Build a :class:`DomainFailure`; context values are stored as strings."""
    return DomainFailure(
        DomainError(
            code=code,
            detail=detail,
            context={key: str(value) for key, value in context.items()},
        )
    )


@dataclass(frozen=True)
class Result(Generic[T]):
    value: T | None = None
    error: DomainError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: DomainError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise DomainFailure(self.error)
        return self.value


def backend_error(exc: BaseException) -> DomainError:
    return DomainError(
        code=ErrorCode.BACKEND_FAILURE,
        detail="Backend request failed",
        context={"type": type(exc).__name__},
    )


def returns_result(
    func: Callable[P, Awaitable[T]],
) -> Callable[P, Awaitable[Result[T]]]:
    """Run *func* and wrap its outcome in a :class:`Result`."""

    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> Result[T]:
        try:
            return Result.success(await func(*args, **kwargs))
        except DomainFailure as exc:
            logger.debug("%s failed: %s", func.__qualname__, exc.error.code.value)
            return Result.failure(exc.error)
        except Exception as exc:
            logger.exception("%s hit a backend failure", func.__qualname__)
            sentry_sdk.capture_exception(exc)
            return Result.failure(backend_error(exc))

    return wrapper
