"""
auth/errors.py -- Error taxonomy for the auth core.

Every failure the auth core reports to a client is one of these exceptions.
api/main.py registers a single handler for AuthError that renders the shared
error envelope, so route code raises and never builds error responses by hand.

Messages are deliberately generic: credential and permission failures never
say whether a username exists, which role was required, or whether the user
has MFA enabled.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations


class AuthError(Exception):
    status_code = 500
    code = "auth_error"
    message = "Authentication error."

    def __init__(self, message: str | None = None, *, headers: dict[str, str] | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message
        self.headers = headers or {}


class Unauthenticated(AuthError):
    status_code = 401
    code = "unauthorized"
    message = "Authentication required."


class InvalidCredentials(Unauthenticated):
    code = "bad_credentials"
    message = "Invalid username or password."


class TokenExpired(Unauthenticated):
    code = "token_expired"
    message = "Token expired."


class TokenMalformed(Unauthenticated):
    code = "invalid_token"
    message = "Invalid token."


class InsufficientPermissions(AuthError):
    status_code = 403
    code = "forbidden"
    message = "Forbidden: Insufficient permissions."


class SessionRequired(AuthError):
    status_code = 403
    code = "session_required"
    message = "This operation requires a session login."


class MFARequired(AuthError):
    status_code = 403
    code = "mfa_required"
    message = "Multi-factor verification required for this operation."


class MFAInvalidCode(AuthError):
    status_code = 400
    code = "mfa_invalid_code"
    message = "Invalid MFA code."


class MFAAlreadyEnabled(AuthError):
    status_code = 409
    code = "mfa_already_enabled"
    message = "MFA is already enabled. Disable it first to set up again."


class MFANotEnabled(AuthError):
    status_code = 400
    code = "mfa_not_enabled"
    message = "MFA is not enabled."


class RateLimited(AuthError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests, please try again later."

    def __init__(self, message: str | None = None, *, retry_after: int, headers: dict[str, str] | None = None) -> None:
        merged = dict(headers or {})
        merged["Retry-After"] = str(retry_after)
        super().__init__(message, headers=merged)
        self.retry_after = retry_after


class StoreUnavailable(AuthError):
    status_code = 503
    code = "store_unavailable"
    message = "A backing store is unavailable."
