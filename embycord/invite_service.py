"""Invite codes that grant first-time users an account quota."""

import datetime
import logging
import secrets
from typing import List, Optional

from embycord.errors import (
    AlreadyUsedError,
    HasQuotaError,
    InvalidCodeError,
    InvalidMaxUsesError,
    InviteCodeAlreadyExistsError,
    invite_code_state_error,
)
from embycord.models import InviteCode, InviteCodeStatus, InviteCodeWithUsage
from embycord.stores import InviteCodeStore
from embycord.timeutil import utcnow
from embycord.user_service import UserService

# No 0/O or 1/I, they are too easy to mix up when typed by hand
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
MAX_GENERATE_ATTEMPTS = 5
REDEEMED_QUOTA = 1


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return code.strip().upper()


class InviteService:
    """Generates, redeems and revokes invite codes."""

    def __init__(self, store: InviteCodeStore, users: UserService):
        self.store = store
        self.users = users
        self.logger = logging.getLogger(self.__class__.__name__)

    def generate(
        self,
        max_uses: int,
        expire_days: int,
        description: str,
        created_by: str,
    ) -> InviteCode:
        """Create a new code.

        ``max_uses`` is -1 for unlimited or a positive count; ``expire_days``
        of 0 or less means the code never expires. A code that collides with
        an existing one is drawn again, up to MAX_GENERATE_ATTEMPTS times.
        """
        if max_uses != -1 and max_uses < 1:
            raise InvalidMaxUsesError(max_uses)

        expire_at: Optional[datetime.datetime] = None
        if expire_days > 0:
            expire_at = utcnow() + datetime.timedelta(days=expire_days)

        last_error: Optional[InviteCodeAlreadyExistsError] = None
        for attempt in range(1, MAX_GENERATE_ATTEMPTS + 1):
            invite_code = InviteCode(
                code=generate_code(),
                max_uses=max_uses,
                expire_at=expire_at,
                status=InviteCodeStatus.ACTIVE,
                description=description,
                created_by=created_by,
            )
            try:
                created = self.store.create(invite_code)
            except InviteCodeAlreadyExistsError as e:
                last_error = e
                self.logger.warning(
                    f"Invite code collision on attempt {attempt}/{MAX_GENERATE_ATTEMPTS}, drawing a new code"
                )
                continue
            self.logger.info(
                f"Generated invite code {created.code} (max uses: {max_uses}, expires: {expire_at}) by {created_by}"
            )
            return created
        raise last_error

    def activate(self, code: str, user_id: int) -> InviteCode:
        """Redeem ``code`` for ``user_id``, granting a quota of exactly 1.

        Raises:
            InvalidCodeError: empty code
            AlreadyUsedError: the user already redeemed a code
            HasQuotaError: the user already has a quota
            InviteCodeNotFoundError: unknown code
            CodeRevokedError, CodeExpiredError, CodeExhaustedError: the code
                can no longer be redeemed (checked in that order)
        """
        code = normalize_code(code)
        if not code:
            raise InvalidCodeError()

        user = self.users.get(user_id)
        if user.used_invite_code:
            raise AlreadyUsedError()
        if user.account_quota > 0:
            raise HasQuotaError()

        invite_code = self.store.get_by_code(code)
        if not invite_code.is_valid():
            raise invite_code_state_error(invite_code)
        if self.store.has_user_used_any(user_id):
            raise AlreadyUsedError()

        # The usage row is unique per user, so concurrent redemptions by the
        # same user fail here before any quota is granted
        updated = self.store.record_usage(invite_code.id, user_id, utcnow())

        self.users.set_quota(user_id, REDEEMED_QUOTA)
        self.users.mark_invite_code_used(user_id)
        self.logger.info(
            f"User {user.display_name()} redeemed invite code {code} ({updated.current_uses} uses so far)"
        )
        return updated

    def get_by_code(self, code: str) -> InviteCode:
        return self.store.get_by_code(normalize_code(code))

    def get_with_usage(self, code: str) -> InviteCodeWithUsage:
        invite_code = self.get_by_code(code)
        return InviteCodeWithUsage(
            code=invite_code, usages=self.store.list_usage(invite_code.id)
        )

    def list(self, offset: int = 0, limit: int = 20) -> List[InviteCode]:
        return self.store.list(offset, limit)

    def count(self) -> int:
        return self.store.count()

    def revoke(self, code: str) -> InviteCode:
        """Revoke a code; revoking an expired or already revoked code is allowed."""
        invite_code = self.get_by_code(code)
        invite_code.revoke()
        self.store.update(invite_code)
        self.logger.info(f"Revoked invite code {invite_code.code}")
        return invite_code
