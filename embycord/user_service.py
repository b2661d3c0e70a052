"""Identity of the Discord members talking to the bot."""

import logging
from typing import List

from embycord.errors import (
    InvalidRoleError,
    UserAlreadyExistsError,
    UserBlockedError,
    UserNotFoundError,
)
from embycord.models import Principal, User, UserRole
from embycord.stores import UserStore


class UserService:
    """Looks up, creates and administers users keyed by their Discord ID."""

    def __init__(self, store: UserStore):
        self.store = store
        self.logger = logging.getLogger(self.__class__.__name__)

    def get_or_create(self, principal: Principal) -> User:
        """Return the user for ``principal``, creating it on first contact.

        Two first events from the same member can race; the store's unique
        external id lets one insert win and the loser re-reads the winner.
        Profile fields are refreshed when Discord reports new ones.
        """
        try:
            return self.update_profile(principal)
        except UserNotFoundError:
            return self._create(principal)

    def _create(self, principal: Principal) -> User:
        user = User(
            external_id=principal.external_id,
            username=principal.username,
            first_name=principal.first_name,
            last_name=principal.last_name,
            role=UserRole.USER,
            is_blocked=False,
            account_quota=0,
        )
        try:
            return self.store.create(user)
        except UserAlreadyExistsError:
            self.logger.info(
                f"Concurrent first contact for {principal.external_id}, using the existing user"
            )
            return self.store.get_by_external_id(principal.external_id)

    def get(self, user_id: int) -> User:
        return self.store.get(user_id)

    def get_by_external_id(self, external_id: str) -> User:
        return self.store.get_by_external_id(external_id)

    def get_by_username(self, username: str) -> User:
        return self.store.get_by_username(username)

    def list(self, offset: int = 0, limit: int = 20) -> List[User]:
        return self.store.list(offset, limit)

    def count(self) -> int:
        return self.store.count()

    def count_by_role(self, role: UserRole) -> int:
        return self.store.count_by_role(role)

    def set_role(self, external_id: str, role: str) -> User:
        try:
            new_role = UserRole(role.lower())
        except ValueError:
            raise InvalidRoleError(role) from None
        user = self.store.get_by_external_id(external_id)
        user.set_role(new_role)
        self.store.update(user)
        self.logger.info(f"Role of user {user.display_name()} set to {new_role.value}")
        return user

    def block(self, external_id: str) -> User:
        user = self.store.get_by_external_id(external_id)
        user.block()
        self.store.update(user)
        self.logger.info(f"Blocked user {user.display_name()} ({external_id})")
        return user

    def unblock(self, external_id: str) -> User:
        user = self.store.get_by_external_id(external_id)
        user.unblock()
        self.store.update(user)
        self.logger.info(f"Unblocked user {user.display_name()} ({external_id})")
        return user

    def check_access(self, external_id: str) -> User:
        user = self.store.get_by_external_id(external_id)
        if not user.can_access():
            raise UserBlockedError()
        return user

    def is_admin(self, external_id: str) -> bool:
        return self.store.get_by_external_id(external_id).is_admin()

    def update_profile(self, principal: Principal) -> User:
        """Copy changed Discord profile fields onto the stored user; raises UserNotFoundError."""
        user = self.store.get_by_external_id(principal.external_id)
        if _profile_changed(user, principal):
            user.username = principal.username
            user.first_name = principal.first_name
            user.last_name = principal.last_name
            self.store.update(user)
        return user

    def set_quota(self, user_id: int, quota: int) -> User:
        """Set the account quota; negative values are clamped to 0."""
        user = self.store.get(user_id)
        user.account_quota = max(quota, 0)
        self.store.update(user)
        self.logger.info(f"Quota of user {user.display_name()} set to {user.account_quota}")
        return user

    def mark_invite_code_used(self, user_id: int) -> User:
        user = self.store.get(user_id)
        user.used_invite_code = True
        self.store.update(user)
        return user

    def soft_delete(self, user_id: int) -> None:
        self.store.soft_delete(user_id)


def _profile_changed(user: User, principal: Principal) -> bool:
    return (
        user.username != principal.username
        or user.first_name != principal.first_name
        or user.last_name != principal.last_name
    )
