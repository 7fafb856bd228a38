from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """An account or session operation refused a request.

    The API layer turns these into error envelopes using ``status_code`` and
    ``error_code``. ``message`` is safe to show to the caller. Nothing in it
    says whether an email is registered, except where a lookup route answers
    404 on purpose (resend and forgot-password). ``detail`` names the
    offending field or provider when that helps a client fix the request.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input the service cannot act on (400).

    An unsupported or unconfigured OAuth provider, a role other than
    ``user``/``admin``, a new password equal to the current one, or an
    OAuth redirect URI that is missing, malformed or plain http off localhost.
    """
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """The caller could not be identified (401).

    Wrong email or password, a missing, forged, expired, misdirected or
    already rotated token, a wrong current password on change, a spent or
    unknown verification code, and OAuth state or code exchanges that fail.
    """
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Identified, but the admin, verified-email or ownership gate said no (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """No such account, looked up by email (resend, forgot-password) or by id (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """The account's current state rules the request out (409).

    Registering a taken email, resending to a verified address, linking a
    second identity from a provider already linked, writes that would break
    a uniqueness rule, and writes that lost the version race on every retry.
    """
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """A per-email or per-address budget ran out (429).

    ``retry_after`` is the whole number of seconds until a retry can succeed
    and becomes the ``Retry-After`` header.
    """
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = max(1, int(retry_after))


class ServerError(ServiceError):
    # Store contradicted itself mid-operation, e.g. an account gone between lookup and delete
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
