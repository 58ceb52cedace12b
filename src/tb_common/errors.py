"""Unified error codes and custom exceptions.

Error code ranges:
  1xxx: Balance source / cache / persistence
  9xxx: System
"""


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int = 500,
    ) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


# --- 1xxx: Balance source ---

class SourceError(AppError):
    """Failure reported by the chain adapter.

    `reason` is the symbolic error code (e.g. "TIMEOUT", "RATE_LIMIT_EXCEEDED")
    and `status` the upstream HTTP status, when known. Both feed the retry
    classifier.
    """

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int,
        reason: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(code, message, http_status)
        self.reason = reason
        self.status = status


class TransientSourceError(SourceError):
    """Network, rate-limit or node-syncing failure — retried automatically."""

    def __init__(
        self, message: str, reason: str | None = None, status: int | None = None
    ) -> None:
        super().__init__(1001, message, 503, reason, status)


class PermanentSourceError(SourceError):
    """Malformed address, missing contract, reverted call — never retried."""

    def __init__(
        self, message: str, reason: str | None = None, status: int | None = None
    ) -> None:
        super().__init__(1002, message, 422, reason, status)


class FetchError(AppError):
    """Chain fetch failed; the HTTP status follows the cause (422 for a permanent one)."""

    def __init__(self, account: str, token: str, cause: BaseException) -> None:
        self.account = account
        self.token = token
        self.cause = cause
        detail = str(cause) or type(cause).__name__
        http_status = cause.http_status if isinstance(cause, SourceError) else 503
        super().__init__(1003, f"Failed to get token balance: {detail}", http_status)


class CacheUnavailableError(AppError):
    def __init__(self, detail: str) -> None:
        super().__init__(1004, f"Cache unavailable: {detail}", 503)


class DurablePersistError(AppError):
    def __init__(self, account: str, token: str, detail: str) -> None:
        self.account = account
        self.token = token
        super().__init__(
            1005, f"Failed to persist balance for {account}/{token}: {detail}", 500
        )


class WatchedPairNotFoundError(AppError):
    def __init__(self, account: str, token: str) -> None:
        super().__init__(1006, f"Token {token} is not watched for {account}", 404)


# --- 9xxx: System ---

class InternalError(AppError):
    def __init__(self, detail: str = "Internal server error") -> None:
        super().__init__(9002, detail, 500)


class InvalidRequestError(AppError):
    def __init__(self, detail: str) -> None:
        super().__init__(9003, detail, 400)


class AdminAuthError(AppError):
    def __init__(self) -> None:
        super().__init__(9004, "Admin key missing or invalid", 403)
