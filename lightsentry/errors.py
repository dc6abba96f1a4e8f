"""Application errors and how they map onto HTTP responses."""

from __future__ import annotations

from http import HTTPStatus


class AppError(Exception):
    """Base class for errors that become an HTTP response."""

    status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR

    def response(self) -> tuple[str, HTTPStatus]:
        """Return the response body and status code for this error."""
        return str(self), self.status


class NotFound(AppError):
    """The requested resource does not exist."""

    status = HTTPStatus.NOT_FOUND

    def __init__(self) -> None:
        super().__init__("not found")


class Unauthorized(AppError):
    """The request lacks valid credentials."""

    status = HTTPStatus.UNAUTHORIZED

    def __init__(self) -> None:
        super().__init__("unauthorized")


class BadRequest(AppError):
    """The request could not be understood."""

    status = HTTPStatus.BAD_REQUEST

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"bad request: {detail}")


class InternalError(AppError):
    """An unexpected failure; its message is that of the underlying cause."""

    status = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, cause: BaseException | str) -> None:
        self.cause = cause
        super().__init__(str(cause))
        if isinstance(cause, BaseException):
            self.__cause__ = cause