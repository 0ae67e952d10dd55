"""
auth/errors.py -- Error taxonomy for the authentication engine.

Every failure a caller can observe is an AuthError subclass carrying:
  code         stable machine-readable identifier (snake_case)
  status_code  HTTP status the transport layer should use
  message      human-readable text, safe to show to end users
  details      optional structured payload (validation errors, session lists)

api/main.py renders these into the shared ErrorResponse envelope. Services
raise them directly; they never raise fastapi.HTTPException, which keeps
auth/ free of transport concerns beyond auth/dependencies.py.

Enumeration rule: InvalidCredentials is raised for both "no such email" and
"wrong password" with the same message. Do not add a distinct error for
either case.
"""

from __future__ import annotations


class AuthError(Exception):
    code = "auth_error"
    status_code = 400
    default_message = "Authentication error."

    def __init__(self, message: str | None = None, *, details: dict | None = None) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Login / credentials
# ---------------------------------------------------------------------------


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid email or password."


class AccountLocked(AuthError):
    code = "account_locked"
    status_code = 401
    default_message = "Account is temporarily locked. Try again later."


class AccountInactive(AuthError):
    code = "account_inactive"
    status_code = 401
    default_message = "Account is inactive."


class EmailNotVerified(AuthError):
    code = "email_not_verified"
    status_code = 401
    default_message = "Email address has not been verified."


class PasswordExpired(AuthError):
    code = "password_expired"
    status_code = 401
    default_message = "Password has expired and must be reset."


class PasswordPolicyViolation(AuthError):
    code = "password_policy_violation"
    status_code = 400
    default_message = "Password does not meet the password policy."


class MfaRequired(AuthError):
    code = "mfa_required"
    status_code = 401
    default_message = "MFA verification required."


class MfaInvalidCode(AuthError):
    code = "mfa_invalid_code"
    status_code = 401
    default_message = "Invalid or expired verification code."


class Unauthenticated(AuthError):
    code = "unauthorized"
    status_code = 401
    default_message = "Authentication required."


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionLimitExceeded(AuthError):
    code = "session_limit_exceeded"
    status_code = 409
    default_message = "Maximum number of active sessions reached."


class SessionSelectionRequired(AuthError):
    """Raised under PROMPT_USER. details["sessions"] lists the candidates to revoke."""

    code = "session_selection_required"
    status_code = 409
    default_message = "Session limit reached. Choose a session to end."


# ---------------------------------------------------------------------------
# Companies / roles / invites
# ---------------------------------------------------------------------------


class NoActiveMembership(AuthError):
    code = "no_active_membership"
    status_code = 403
    default_message = "You do not have active access to this company."


class CompanyNotFound(AuthError):
    code = "company_not_found"
    status_code = 404
    default_message = "Company not found."


class AlreadyMember(AuthError):
    code = "already_member"
    status_code = 400
    default_message = "User is already a member of this company."


class InternalUserNotInvitable(AuthError):
    code = "internal_user_not_invitable"
    status_code = 400
    default_message = "Internal platform users cannot be invited to companies."


class SeatLimitReached(AuthError):
    code = "seat_limit_reached"
    status_code = 400
    default_message = "The company has no seats available."


class InviteInvalid(AuthError):
    code = "invite_invalid"
    status_code = 400
    default_message = "Invitation is invalid."


class SystemRoleProtected(AuthError):
    code = "system_role_protected"
    status_code = 403
    default_message = "System roles cannot be modified or deleted."


class PermissionDenied(AuthError):
    code = "forbidden"
    status_code = 403
    default_message = "You do not have permission to perform this action."


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found."


class Conflict(AuthError):
    code = "conflict"
    status_code = 409
    default_message = "Resource already exists."


class ValidationFailed(AuthError):
    code = "invalid_request"
    status_code = 400
    default_message = "Request is invalid."


# ---------------------------------------------------------------------------
# Tokens (OAuth, reset links, invites)
# ---------------------------------------------------------------------------


class TokenExpired(AuthError):
    code = "token_expired"
    status_code = 401
    default_message = "Token has expired."


class TokenAlreadyUsed(AuthError):
    code = "token_already_used"
    status_code = 400
    default_message = "Token has already been used."


class PkceMismatch(AuthError):
    code = "pkce_mismatch"
    status_code = 400
    default_message = "PKCE code verifier does not match the code challenge."


class RefreshTokenReuseDetected(AuthError):
    code = "refresh_token_reuse_detected"
    status_code = 400
    default_message = "Refresh token reuse detected. All tokens for this grant have been revoked."


class InvalidClient(AuthError):
    code = "invalid_client"
    status_code = 401
    default_message = "Client authentication failed."


class InvalidGrant(AuthError):
    code = "invalid_grant"
    status_code = 400
    default_message = "Authorization grant is invalid."


class InvalidScope(AuthError):
    code = "invalid_scope"
    status_code = 400
    default_message = "Requested scope is not allowed for this client."


class UnsupportedGrantType(AuthError):
    code = "unsupported_grant_type"
    status_code = 400
    default_message = "grant_type must be authorization_code or refresh_token."


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class StoreUnavailable(AuthError):
    """The store timed out or refused the connection. Safe to retry the request."""

    code = "store_unavailable"
    status_code = 503
    default_message = "Service temporarily unavailable. Please retry."
