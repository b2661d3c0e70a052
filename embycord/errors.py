"""Exception hierarchy shared by the services, the stores and the Emby client.

Every exception exposes a ``template_key`` naming the entry under ``errors`` in
message_templates.json that renders it for end users, plus the attributes the
template needs.
"""

from typing import Any, Dict, Optional


class EmbycordError(Exception):
    """Base exception for Embycord"""

    template_key = "generic_command_error"

    def template_kwargs(self) -> Dict[str, Any]:
        return {}


# --- Validation ---


class ValidationError(EmbycordError):
    """A field failed validation"""

    template_key = "invalid_input"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"invalid {field}: {reason}")

    def template_kwargs(self) -> Dict[str, Any]:
        return {"field": self.field, "reason": self.reason}


class UsageError(EmbycordError):
    """A command was called with missing arguments"""

    template_key = "usage"

    def __init__(self, usage: str):
        self.usage = usage
        super().__init__(f"usage: {usage}")

    def template_kwargs(self) -> Dict[str, Any]:
        return {"usage": self.usage}


# --- Accounts ---


class AccountError(EmbycordError):
    """Account-related error"""


class AccountNotFoundError(AccountError):
    template_key = "account_not_found"

    def __init__(self, ref: Any = None):
        self.ref = ref
        super().__init__(f"account not found: {ref}" if ref is not None else "account not found")


class AccountAlreadyExistsError(AccountError):
    template_key = "account_already_exists"

    def __init__(self, username: str):
        self.username = username
        super().__init__(f"account already exists: {username}")

    def template_kwargs(self) -> Dict[str, Any]:
        return {"username": self.username}


class AccountExpiredError(AccountError):
    template_key = "account_expired"


class AccountSuspendedError(AccountError):
    template_key = "account_suspended"


class AccountUnauthorizedError(AccountError):
    """The acting user does not own the account"""

    template_key = "account_unauthorized"

    def __init__(self, message: str = "you do not own this account"):
        super().__init__(message)


class AccountNotSyncedError(AccountError):
    template_key = "account_not_synced"

    def __init__(self, username: str):
        self.username = username
        super().__init__(f"account {username} has no Emby user yet")

    def template_kwargs(self) -> Dict[str, Any]:
        return {"username": self.username}


class AccountLimitExceededError(AccountError):
    template_key = "account_limit_exceeded"

    def __init__(self, current: int, limit: int, message: Optional[str] = None):
        self.current = current
        self.limit = limit
        super().__init__(
            message or f"account limit exceeded (current: {current}, limit: {limit})"
        )

    def template_kwargs(self) -> Dict[str, Any]:
        return {"current": self.current, "limit": self.limit}


class QuotaExceededError(AccountLimitExceededError):
    template_key = "quota_exceeded"

    def __init__(self, current: int, quota: int):
        super().__init__(
            current, quota, f"quota exceeded (current: {current}, quota: {quota})"
        )


class NotAuthorizedError(AccountError):
    """The user has no account quota at all"""

    template_key = "not_authorized"

    def __init__(self):
        super().__init__("not authorized to create accounts, please contact an admin")


# --- Users ---


class UserError(EmbycordError):
    """User-related error"""


class UserNotFoundError(UserError):
    template_key = "user_not_found"

    def __init__(self, ref: Any = None):
        self.ref = ref
        super().__init__(f"user not found: {ref}" if ref is not None else "user not found")

    def template_kwargs(self) -> Dict[str, Any]:
        return {"ref": self.ref}


class UserAlreadyExistsError(UserError):
    template_key = "generic_command_error"

    def __init__(self, external_id: str):
        self.external_id = external_id
        super().__init__(f"user already exists: {external_id}")


class UserBlockedError(UserError):
    template_key = "user_blocked"

    def __init__(self):
        super().__init__("user is blocked")


class AdminRequiredError(UserError):
    template_key = "admin_required"

    def __init__(self):
        super().__init__("admin permission required")


class InvalidRoleError(UserError):
    template_key = "invalid_role"

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"invalid role: {role}")

    def template_kwargs(self) -> Dict[str, Any]:
        return {"role": self.role}


# --- Invite codes ---


class InviteCodeError(EmbycordError):
    """Invite code related error"""


class InviteCodeNotFoundError(InviteCodeError):
    template_key = "code_not_found"

    def __init__(self, code: str = ""):
        self.code = code
        super().__init__(f"invite code not found: {code}")

    def template_kwargs(self) -> Dict[str, Any]:
        return {"code": self.code}


class InviteCodeAlreadyExistsError(InviteCodeError):
    template_key = "generic_command_error"

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"invite code already exists: {code}")


class InvalidCodeError(InviteCodeError):
    template_key = "invalid_code"

    def __init__(self):
        super().__init__("invite code must not be empty")


class CodeExpiredError(InviteCodeError):
    template_key = "code_expired"

    def __init__(self):
        super().__init__("invite code has expired")


class CodeExhaustedError(InviteCodeError):
    template_key = "code_exhausted"

    def __init__(self):
        super().__init__("invite code has no uses left")


class CodeRevokedError(InviteCodeError):
    template_key = "code_revoked"

    def __init__(self):
        super().__init__("invite code has been revoked")


class AlreadyUsedError(InviteCodeError):
    template_key = "code_already_used"

    def __init__(self):
        super().__init__("user has already redeemed an invite code")


class HasQuotaError(InviteCodeError):
    template_key = "code_has_quota"

    def __init__(self):
        super().__init__("user already has an account quota")


class InvalidMaxUsesError(InviteCodeError):
    template_key = "invalid_max_uses"

    def __init__(self, max_uses: int):
        self.max_uses = max_uses
        super().__init__(f"max uses must be -1 or a positive integer, got {max_uses}")


# --- Emby ---


class EmbyError(EmbycordError):
    """Error talking to the Emby server"""

    template_key = "emby_error"

    def template_kwargs(self) -> Dict[str, Any]:
        return {"error": str(self)}


class SyncDisabledError(EmbyError):
    template_key = "sync_disabled"

    def __init__(self):
        super().__init__("emby sync is disabled")


class ServerUnavailableError(EmbyError):
    def __init__(self, message: str = "emby server unavailable"):
        super().__init__(message)


class EmbyServerError(ServerUnavailableError):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"emby server error (status {status_code}): {message}")


class EmbyUnauthorizedError(EmbyError):
    def __init__(self):
        super().__init__("unauthorized: check the emby api key")


class EmbyUserNotFoundError(EmbyError):
    def __init__(self, ref: Optional[str] = None):
        self.ref = ref
        super().__init__(f"emby user not found: {ref}" if ref else "emby user not found")


class EmbyUserAlreadyExistsError(EmbyError):
    def __init__(self, name: Optional[str] = None):
        self.name = name
        super().__init__(f"emby user already exists: {name}" if name else "emby user already exists")


class InvalidResponseError(EmbyError):
    def __init__(self, message: str):
        super().__init__(f"invalid response from emby: {message}")


class RequestCancelledError(EmbyError):
    def __init__(self):
        super().__init__("emby request cancelled")


# Remote failures that are never retried
TERMINAL_EMBY_ERRORS = (
    EmbyUnauthorizedError,
    EmbyUserNotFoundError,
    EmbyUserAlreadyExistsError,
)


def invite_code_state_error(invite_code: Any) -> InviteCodeError:
    """Pick the error describing why a code can no longer be redeemed.

    Checked in priority order: revoked, expired, exhausted.
    """
    if invite_code.status == "revoked":
        return CodeRevokedError()
    if invite_code.is_expired():
        return CodeExpiredError()
    if invite_code.is_exhausted():
        return CodeExhaustedError()
    return CodeExpiredError()
