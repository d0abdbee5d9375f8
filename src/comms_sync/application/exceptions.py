from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class TransportError(AppError):
    """Anything that went wrong talking to the marketplace server."""


class AuthExpired(TransportError):
    """Credential missing, invalid or expired. Redirect to login, never retry."""


class RequestFailed(TransportError):
    def __init__(self, detail: str = "", status: int | None = None) -> None:
        self.status = status
        super().__init__(detail)


class ChannelClosed(TransportError):
    """The push channel dropped or could not be opened."""


class ReconciliationConflict(AppError):
    pass


class NotFoundError(AppError):
    pass


class ValidationError(AppError):
    pass
