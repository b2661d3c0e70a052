"""Tests for UserService."""

from unittest.mock import MagicMock

import pytest

from embycord.errors import (
    InvalidRoleError,
    UserAlreadyExistsError,
    UserBlockedError,
    UserNotFoundError,
)
from embycord.models import Principal, User, UserRole
from embycord.user_service import UserService


class TestGetOrCreate:
    """Tests for UserService.get_or_create."""

    def test_first_contact_creates_plain_user(self, user_service, member):
        """A new member starts as a user with no quota."""
        # Act
        user = user_service.get_or_create(member)

        # Assert
        assert user.id is not None
        assert user.role == UserRole.USER
        assert user.account_quota == 0
        assert user.is_blocked is False

    def test_second_contact_returns_same_user(self, user_service, member):
        first = user_service.get_or_create(member)

        second = user_service.get_or_create(member)

        assert second.id == first.id
        assert user_service.count() == 1

    def test_profile_changes_are_saved(self, user_service, member):
        """A changed Discord name is written back."""
        # Arrange
        user_service.get_or_create(member)
        renamed = Principal(external_id=member.external_id, username="alice2", first_name="Al")

        # Act
        user_service.get_or_create(renamed)

        # Assert
        stored = user_service.get_by_external_id(member.external_id)
        assert stored.username == "alice2"
        assert stored.first_name == "Al"

    def test_concurrent_first_contact_uses_winner(self, member):
        """Losing the insert race re-reads the user created by the winner."""
        # Arrange
        winner = User(external_id=member.external_id, username="alice", id=5)
        store = MagicMock()
        store.get_by_external_id.side_effect = [UserNotFoundError(member.external_id), winner]
        store.create.side_effect = UserAlreadyExistsError(member.external_id)
        service = UserService(store)

        # Act
        user = service.get_or_create(member)

        # Assert
        assert user is winner


class TestUpdateProfile:
    """Tests for UserService.update_profile."""

    def test_unchanged_profile_is_not_written(self, member):
        stored = User(
            external_id=member.external_id,
            username=member.username,
            first_name=member.first_name,
            last_name=member.last_name,
            id=1,
        )
        store = MagicMock()
        store.get_by_external_id.return_value = stored

        user = UserService(store).update_profile(member)

        assert user is stored
        store.update.assert_not_called()

    def test_changed_profile_is_written(self, user_service, member):
        user_service.get_or_create(member)
        renamed = Principal(external_id=member.external_id, username="alice2", last_name="Liddell")

        user = user_service.update_profile(renamed)

        assert user.username == "alice2"
        assert user_service.get_by_external_id(member.external_id).last_name == "Liddell"

    def test_unknown_member_raises(self, user_service, member):
        with pytest.raises(UserNotFoundError):
            user_service.update_profile(member)


class TestAdministration:
    """Tests for role, block and quota changes."""

    def test_set_role(self, user_service, member):
        user_service.get_or_create(member)

        user = user_service.set_role(member.external_id, "ADMIN")

        assert user.is_admin() is True
        assert user_service.is_admin(member.external_id) is True
        assert user_service.count_by_role(UserRole.ADMIN) == 1

    def test_invalid_role(self, user_service, member):
        user_service.get_or_create(member)

        with pytest.raises(InvalidRoleError):
            user_service.set_role(member.external_id, "owner")

    def test_block_and_unblock(self, user_service, member):
        """A blocked user fails the access check until unblocked."""
        # Arrange
        user_service.get_or_create(member)

        # Act / Assert
        user_service.block(member.external_id)
        with pytest.raises(UserBlockedError):
            user_service.check_access(member.external_id)

        user_service.unblock(member.external_id)
        assert user_service.check_access(member.external_id).is_blocked is False

    def test_set_quota_clamps_negative(self, user_service, member):
        user = user_service.get_or_create(member)

        assert user_service.set_quota(user.id, 3).account_quota == 3
        assert user_service.set_quota(user.id, -2).account_quota == 0

    def test_unknown_user(self, user_service):
        with pytest.raises(UserNotFoundError):
            user_service.block("404")

    def test_lookup_by_username(self, user_service, member):
        user = user_service.get_or_create(member)

        assert user_service.get_by_username("@Alice").id == user.id

    def test_soft_delete_hides_user(self, user_service, member):
        user = user_service.get_or_create(member)

        user_service.soft_delete(user.id)

        with pytest.raises(UserNotFoundError):
            user_service.get(user.id)
