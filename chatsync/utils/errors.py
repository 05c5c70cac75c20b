"""Error taxonomy shared by repositories, services and routers.

Repositories translate driver errors into these classes so the sync layer
can decide how loud to be: permission problems are silent, missing
documents take a fallback path, transient failures are logged (and toasted
for user-initiated actions), validation failures never reach the database.
"""

from contextlib import contextmanager
from typing import Iterator

from pymongo.errors import (
    ConnectionFailure,
    ExecutionTimeout,
    OperationFailure,
    PyMongoError,
    WTimeoutError,
)


# server error codes for "not allowed" (Unauthorized, AuthenticationFailed)
PERMISSION_DENIED_CODES = {13, 18}


class ChatError(Exception):

    code = "unknown"

    def __init__(self, message: str = "", *, cause: Exception | None = None) -> None:
        super().__init__(message or self.code)
        self.cause = cause


class PermissionDeniedError(ChatError):

    code = "permission-denied"


class NotFoundError(ChatError):

    code = "not-found"


class TransientError(ChatError):

    code = "unavailable"


class ChatValidationError(ChatError):

    code = "invalid-argument"


def classify_backend_error(exc: BaseException) -> ChatError:
    if isinstance(exc, ChatError):
        return exc
    if isinstance(exc, OperationFailure) and not isinstance(exc, ExecutionTimeout):
        if exc.code in PERMISSION_DENIED_CODES:
            return PermissionDeniedError(str(exc), cause=exc)
        return TransientError(str(exc), cause=exc)
    if isinstance(exc, (ConnectionFailure, ExecutionTimeout, WTimeoutError)):
        return TransientError(str(exc), cause=exc)
    if isinstance(exc, PyMongoError):
        return TransientError(str(exc), cause=exc)
    return ChatError(str(exc), cause=exc if isinstance(exc, Exception) else None)


@contextmanager
def translate_errors() -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        raise classify_backend_error(exc) from exc


def is_permission_denied(exc: BaseException) -> bool:
    return isinstance(classify_backend_error(exc), PermissionDeniedError)
