"""Unit tests for the domain models."""

import datetime

from embycord.models import (
    Account,
    AccountStatus,
    EmbyUser,
    InviteCode,
    InviteCodeStatus,
    NowPlayingItem,
    SessionInfo,
    SyncStatus,
    User,
)
from embycord.timeutil import utcnow


def _account(**kwargs) -> Account:
    return Account(username="alice", password_hash="x", user_id=1, **kwargs)


class TestAccountRenew:
    """Tests for Account.renew."""

    def test_extends_future_expiry(self):
        """A future expiry is pushed back by the given days."""
        # Arrange
        expire_at = utcnow() + datetime.timedelta(days=5)
        account = _account(expire_at=expire_at)

        # Act
        account.renew(30)

        # Assert
        assert account.expire_at == expire_at + datetime.timedelta(days=30)

    def test_past_expiry_restarts_from_now(self):
        """An already passed expiry is replaced by now + days."""
        # Arrange
        account = _account(
            expire_at=utcnow() - datetime.timedelta(days=10),
            status=AccountStatus.EXPIRED,
        )

        # Act
        account.renew(7)

        # Assert
        assert account.days_until_expire() in (6, 7)
        assert account.status == AccountStatus.ACTIVE

    def test_permanent_account_becomes_time_limited(self):
        """Renewing an account without expiry gives it one."""
        # Arrange
        account = _account(expire_at=None)

        # Act
        account.renew(30)

        # Assert
        assert account.expire_at is not None
        assert account.days_until_expire() in (29, 30)

    def test_suspended_account_stays_suspended(self):
        """Renewal never lifts a suspension."""
        # Arrange
        account = _account(
            expire_at=utcnow() - datetime.timedelta(days=1),
            status=AccountStatus.SUSPENDED,
        )

        # Act
        account.renew(30)

        # Assert
        assert account.status == AccountStatus.SUSPENDED


class TestAccountState:
    """Tests for the Account status and sync helpers."""

    def test_no_expiry_never_expires(self):
        """An account without expire_at is never expired."""
        account = _account(expire_at=None)

        assert account.is_expired() is False
        assert account.days_until_expire() == -1
        assert account.is_valid() is True

    def test_past_expiry_is_expired(self):
        """An account past its expiry is expired and not valid."""
        account = _account(expire_at=utcnow() - datetime.timedelta(minutes=1))

        assert account.is_expired() is True
        assert account.days_until_expire() == 0
        assert account.is_valid() is False

    def test_mark_synced_clears_error(self):
        """A successful sync stores the remote id and clears the last error."""
        # Arrange
        account = _account(sync_status=SyncStatus.FAILED, sync_error="boom")

        # Act
        account.mark_synced("emby-1")

        # Assert
        assert account.is_synced() is True
        assert account.sync_error == ""
        assert account.last_sync_at is not None

    def test_mark_sync_failed_keeps_remote_id(self):
        """A failed sync records the error without forgetting the remote user."""
        # Arrange
        account = _account(remote_id="emby-1", sync_status=SyncStatus.SYNCED)

        # Act
        account.mark_sync_failed("timeout")

        # Assert
        assert account.remote_id == "emby-1"
        assert account.sync_status == SyncStatus.FAILED
        assert account.is_synced() is False


class TestInviteCode:
    """Tests for InviteCode usage accounting."""

    def test_last_use_expires_code(self):
        """Using up the last use flips the status to expired."""
        # Arrange
        code = InviteCode(code="ABCD2345", max_uses=2, current_uses=1)

        # Act
        code.mark_used()

        # Assert
        assert code.current_uses == 2
        assert code.is_exhausted() is True
        assert code.status == InviteCodeStatus.EXPIRED
        assert code.remaining_uses() == 0

    def test_unlimited_code_is_never_exhausted(self):
        """A max_uses of -1 means unlimited."""
        # Arrange
        code = InviteCode(code="ABCD2345", max_uses=-1, current_uses=500)

        # Act
        code.mark_used()

        # Assert
        assert code.is_exhausted() is False
        assert code.remaining_uses() == -1
        assert code.is_valid() is True

    def test_revoked_code_is_invalid(self):
        """A revoked code cannot be redeemed even with uses left."""
        code = InviteCode(code="ABCD2345", max_uses=5)

        code.revoke()

        assert code.is_valid() is False

    def test_past_expiry_is_invalid(self):
        """A code past its expire_at is no longer valid."""
        code = InviteCode(
            code="ABCD2345", expire_at=utcnow() - datetime.timedelta(seconds=1)
        )

        assert code.is_expired() is True
        assert code.is_valid() is False


class TestUser:
    """Tests for User display helpers."""

    def test_display_name_prefers_username(self):
        user = User(external_id="1", username="alice", first_name="Alice")

        assert user.display_name() == "@alice"

    def test_display_name_falls_back_to_full_name_then_id(self):
        assert User(external_id="1", first_name="Alice", last_name="Smith").display_name() == "Alice Smith"
        assert User(external_id="42").display_name() == "42"


class TestEmbyRecords:
    """Tests for the Emby API records."""

    def test_user_from_api(self):
        """Emby's PascalCase payload maps onto EmbyUser."""
        # Arrange
        data = {
            "Id": "abc",
            "Name": "alice",
            "HasPassword": True,
            "Policy": {"IsAdministrator": True, "IsDisabled": False},
        }

        # Act
        user = EmbyUser.from_api(data)

        # Assert
        assert user.id == "abc"
        assert user.has_password is True
        assert user.is_admin() is True
        assert user.is_disabled() is False

    def test_episode_display_name(self):
        """Episodes render as series plus season and episode numbers."""
        item = NowPlayingItem(
            id="1",
            name="Pilot",
            type="Episode",
            series_name="Show",
            parent_index_number=1,
            index_number=2,
        )

        assert item.display_name == "Show S01E02"

    def test_episode_without_numbers_uses_name(self):
        item = NowPlayingItem(id="1", name="Special", type="Episode", series_name="Show")

        assert item.display_name == "Show - Special"

    def test_movie_display_name_and_duration(self):
        item = NowPlayingItem(id="1", name="Film", type="Movie", run_time_ticks=72_000_000_000)

        assert item.display_name == "Film"
        assert item.duration_seconds == 7200

    def test_session_progress(self):
        """Progress is the play position as a percentage of the runtime."""
        # Arrange
        data = {
            "Id": "s1",
            "UserName": "alice",
            "NowPlayingItem": {"Id": "1", "Name": "Film", "RunTimeTicks": 1000},
            "PlayState": {"PositionTicks": 250, "IsPaused": False},
        }

        # Act
        session = SessionInfo.from_api(data)

        # Assert
        assert session.is_playing() is True
        assert session.progress() == 25.0

    def test_session_without_runtime_has_zero_progress(self):
        data = {
            "Id": "s1",
            "NowPlayingItem": {"Id": "1", "Name": "Live"},
            "PlayState": {"PositionTicks": 250, "IsPaused": True},
        }

        session = SessionInfo.from_api(data)

        assert session.progress() == 0.0
        assert session.is_playing() is False

    def test_idle_session_is_not_playing(self):
        session = SessionInfo.from_api({"Id": "s1"})

        assert session.is_playing() is False
        assert session.progress() == 0.0
