"""Tests for CommandDispatcher routing, permissions and multi-step flows."""

from unittest.mock import MagicMock

import pytest

from embycord.commands.dispatcher import ActionResponse, Command
from embycord.errors import (
    AccountNotFoundError,
    AdminRequiredError,
    QuotaExceededError,
    ServerUnavailableError,
    UsageError,
    UserBlockedError,
)
from embycord.messaging import get_message, render_error
from embycord.models import (
    Account,
    AccountStatus,
    ConversationState,
    EmbyUser,
    NowPlayingItem,
    SessionInfo,
    SystemInfo,
)


@pytest.fixture
def member_user(make_user, member):
    return make_user(member, quota=2)


def _tokens(response: ActionResponse):
    return [button.token for row in response.buttons for button in row]


class TestDispatch:
    """Tests for command routing and error rendering."""

    def test_unknown_command(self, dispatcher, member):
        response = dispatcher.dispatch(member, "frobnicate", [])

        assert response.text == get_message("general.unknown_command", command="frobnicate")

    def test_command_name_is_normalized(self, dispatcher, member):
        text = dispatcher.handle_command(member, "/HELP", [])

        assert text.startswith(get_message("general.help"))

    def test_first_contact_registers_user(self, dispatcher, user_service, member):
        dispatcher.dispatch(member, "start", [])

        assert user_service.get_by_external_id(member.external_id).username == "alice"

    def test_admin_command_rejected_for_members(self, dispatcher, member):
        """Members get the admin-only message and a failed response."""
        # Act
        response = dispatcher.dispatch(member, "stats", [])

        # Assert
        assert response.ok is False
        assert response.text == render_error(AdminRequiredError())

    def test_configured_admin_ids_are_admins(self, dispatcher, admin):
        response = dispatcher.dispatch(admin, "stats", [])

        assert response.ok is True

    def test_role_admins_are_admins(self, dispatcher, user_service, member):
        user_service.get_or_create(member)
        user_service.set_role(member.external_id, "admin")

        assert dispatcher.dispatch(member, "admin", []).text == get_message("admin.help")

    def test_blocked_user_is_rejected(self, dispatcher, user_service, member):
        user_service.get_or_create(member)
        user_service.block(member.external_id)

        response = dispatcher.dispatch(member, "help", [])

        assert response.text == render_error(UserBlockedError())
        assert response.ok is False

    def test_missing_arguments_render_usage(self, dispatcher, member):
        response = dispatcher.dispatch(member, "info", [])

        assert response.ok is False
        assert response.text == render_error(
            UsageError(get_message(f"usage.{Command.INFO.value}"))
        )

    def test_unexpected_errors_get_generic_message(self, dispatcher, member):
        """Internal failures never leak their details to the user."""
        dispatcher._handlers[Command.HELP] = MagicMock(side_effect=RuntimeError("db on fire"))

        response = dispatcher.dispatch(member, "help", [])

        assert response.ok is False
        assert response.text == get_message("errors.generic_command_error")
        assert "db on fire" not in response.text

    def test_start_offers_account_button(self, dispatcher, member):
        response = dispatcher.dispatch(member, "start", [])

        assert _tokens(response) == ["accounts"]


class TestMemberCommands:
    """Tests for the member-facing commands."""

    def test_create_with_username(self, dispatcher, account_service, member, member_user):
        text = dispatcher.handle_command(member, "create", ["alice_tv"])

        account = account_service.get_by_username("alice_tv")
        assert account.user_id == member_user.id
        assert "`alice_tv`" in text

    def test_create_without_quota(self, dispatcher, member):
        response = dispatcher.dispatch(member, "create", ["alice_tv"])

        assert response.ok is False
        assert response.text == get_message("errors.not_authorized")

    def test_create_over_quota(self, dispatcher, member, member_user):
        dispatcher.handle_command(member, "create", ["one"])
        dispatcher.handle_command(member, "create", ["two"])

        text = dispatcher.handle_command(member, "create", ["three"])

        assert text == render_error(QuotaExceededError(2, 2))

    def test_my_accounts_lists_buttons(self, dispatcher, account_service, member, member_user):
        account, _ = account_service.create("alice_tv", member_user.id)

        response = dispatcher.dispatch(member, "myaccounts", [])

        assert _tokens(response) == [f"account:{account.id}"]
        assert "alice_tv" in response.text

    def test_my_accounts_empty(self, dispatcher, member):
        assert dispatcher.handle_command(member, "myaccounts", []) == get_message("account.list_empty")

    def test_info_of_foreign_account_is_refused(
        self, dispatcher, account_service, make_user, member, other_member
    ):
        """Members only see their own accounts."""
        # Arrange
        owner = make_user(other_member, quota=1)
        account_service.create("bob_tv", owner.id)

        # Act
        text = dispatcher.handle_command(member, "info", ["bob_tv"])

        # Assert
        assert text == get_message("errors.account_unauthorized")

    def test_admin_sees_any_account_with_delete_button(
        self, dispatcher, account_service, make_user, admin, other_member
    ):
        owner = make_user(other_member, quota=1)
        account, _ = account_service.create("bob_tv", owner.id)

        response = dispatcher.dispatch(admin, "info", ["bob_tv"])

        assert f"delete:{account.id}" in _tokens(response)

    def test_renew_with_days(self, dispatcher, account_service, member, member_user):
        account, _ = account_service.create("alice_tv", member_user.id)

        dispatcher.handle_command(member, "renew", ["alice_tv", "30"])

        assert account_service.get(account.id).days_until_expire() >= 59

    def test_quota_status(self, dispatcher, account_service, member, member_user):
        account_service.create("alice_tv", member_user.id)

        text = dispatcher.handle_command(member, "quota", [])

        assert text == get_message(
            "quota.status",
            status=get_message("quota.status_ok"),
            quota=2,
            count=1,
            remaining=1,
        )

    def test_quota_without_authorization(self, dispatcher, member):
        text = dispatcher.handle_command(member, "quota", [])

        assert text == get_message("quota.unauthorized", count=0)

    def test_redeem_with_code(self, dispatcher, invite_service, user_service, member):
        code = invite_service.generate(1, 0, "", "root")

        text = dispatcher.handle_command(member, "redeem", [code.code])

        assert text == get_message("invite.redeemed", code=code.code)
        assert user_service.get_by_external_id(member.external_id).account_quota == 1

    def test_sync_status(self, dispatcher, account_service, member, member_user):
        account_service.create("alice_tv", member_user.id)

        text = dispatcher.handle_command(member, "syncstatus", ["alice_tv"])

        assert "emby-alice_tv" in text

    def test_cancel_without_flow(self, dispatcher, member):
        assert dispatcher.handle_command(member, "cancel", []) == get_message(
            "general.nothing_to_cancel"
        )


class TestFlows:
    """Tests for the multi-step conversations fed by direct messages."""

    def test_text_without_flow_is_ignored(self, dispatcher, member):
        assert dispatcher.handle_text(member, "hello") is None

    def test_create_flow(self, dispatcher, account_service, state_machine, member, member_user):
        """/create without a name asks for one and the next message creates the account."""
        # Arrange
        prompt = dispatcher.handle_command(member, "create", [])

        # Act
        reply = dispatcher.handle_text(member, "alice_tv")

        # Assert
        assert "emby_alice" in prompt
        assert "`alice_tv`" in reply
        assert account_service.count_by_user(member_user.id) == 1
        assert state_machine.get_state(member.external_id)[0] == ConversationState.IDLE

    def test_invalid_username_keeps_waiting(self, dispatcher, state_machine, member, member_user):
        dispatcher.handle_command(member, "create", [])

        reply = dispatcher.handle_text(member, "a!")

        assert get_message("general.retry_hint") in reply
        assert state_machine.get_state(member.external_id)[0] == ConversationState.WAITING_USERNAME

    def test_quota_error_ends_flow(self, dispatcher, state_machine, member):
        """Errors that retrying cannot fix end the conversation."""
        dispatcher.handle_command(member, "create", [])

        reply = dispatcher.handle_text(member, "alice_tv")

        assert reply == get_message("errors.not_authorized")
        assert state_machine.get_state(member.external_id)[0] == ConversationState.IDLE

    def test_cancel_word_clears_flow(self, dispatcher, state_machine, member):
        dispatcher.handle_command(member, "redeem", [])

        reply = dispatcher.handle_text(member, "Cancel")

        assert reply == get_message("general.cancelled")
        assert state_machine.get_state(member.external_id)[0] == ConversationState.IDLE

    def test_password_flow(self, dispatcher, account_service, emby, member, member_user):
        account, _ = account_service.create("alice_tv", member_user.id)
        dispatcher.handle_command(member, "changepassword", ["alice_tv"])

        short = dispatcher.handle_text(member, "abc")
        reply = dispatcher.handle_text(member, "n3wpass")

        assert get_message("general.retry_hint") in short
        assert reply == get_message("account.password_changed", username="alice_tv")
        emby.update_password.assert_called_once_with(account.remote_id, "n3wpass", None)

    def test_overlong_password_keeps_waiting(self, dispatcher, state_machine, account_service, member, member_user):
        account_service.create("alice_tv", member_user.id)
        dispatcher.handle_command(member, "changepassword", ["alice_tv"])

        reply = dispatcher.handle_text(member, "\u00e9" * 40)

        assert get_message("general.retry_hint") in reply
        assert state_machine.get_state(member.external_id)[0] == ConversationState.WAITING_PASSWORD

    def test_days_flow(self, dispatcher, account_service, member, member_user):
        account, _ = account_service.create("alice_tv", member_user.id)
        dispatcher.handle_command(member, "renew", ["alice_tv"])

        garbage = dispatcher.handle_text(member, "a month")
        dispatcher.handle_text(member, "30")

        assert get_message("general.retry_hint") in garbage
        assert account_service.get(account.id).days_until_expire() >= 59

    def test_invite_code_flow_retries_unknown_code(
        self, dispatcher, invite_service, state_machine, member
    ):
        code = invite_service.generate(1, 0, "", "root")
        dispatcher.handle_command(member, "redeem", [])

        unknown = dispatcher.handle_text(member, "NOPE2345")
        reply = dispatcher.handle_text(member, code.code.lower())

        assert get_message("general.retry_hint") in unknown
        assert reply == get_message("invite.redeemed", code=code.code)
        assert state_machine.get_state(member.external_id)[0] == ConversationState.IDLE

    def test_flow_on_deleted_account_ends(self, dispatcher, account_service, state_machine, member, member_user):
        account, _ = account_service.create("alice_tv", member_user.id)
        dispatcher.handle_command(member, "renew", ["alice_tv"])
        account_service.delete(account.id)

        reply = dispatcher.handle_text(member, "30")

        assert reply == render_error(AccountNotFoundError(account.id))
        assert state_machine.get_state(member.external_id)[0] == ConversationState.IDLE


class TestActions:
    """Tests for button tokens."""

    @pytest.fixture
    def account(self, account_service, member_user):
        account, _ = account_service.create("alice_tv", member_user.id)
        return account

    def test_unknown_action(self, dispatcher, member):
        response = dispatcher.handle_action(member, "explode:1")

        assert response.show_alert is True
        assert response.ok is False

    def test_account_details(self, dispatcher, member, account):
        response = dispatcher.handle_action(member, f"account:{account.id}")

        tokens = _tokens(response)
        assert f"renew:{account.id}" in tokens
        assert f"pwd:{account.id}" in tokens
        assert f"rating:{account.id}" in tokens
        assert f"delete:{account.id}" not in tokens

    def test_renew_options_then_choice(self, dispatcher, account_service, member, account):
        """The renew button offers day options; picking one renews."""
        # Act
        options = dispatcher.handle_action(member, f"renew:{account.id}")
        renewed = dispatcher.handle_action(member, f"renew:{account.id}:90")

        # Assert
        assert f"renew:{account.id}:7" in _tokens(options)
        assert f"renew:{account.id}:365" in _tokens(options)
        assert renewed.answer == get_message("account.renewed_short", days=90)
        assert account_service.get(account.id).days_until_expire() >= 119

    def test_password_button_starts_flow(self, dispatcher, state_machine, member, account):
        dispatcher.handle_action(member, f"pwd:{account.id}")

        state, payload = state_machine.get_state(member.external_id)
        assert state == ConversationState.WAITING_PASSWORD
        assert payload == {"account_id": account.id}

    def test_rating_choice(self, dispatcher, emby, member, account):
        options = dispatcher.handle_action(member, f"rating:{account.id}")
        chosen = dispatcher.handle_action(member, f"rating:{account.id}:7")

        assert len([t for t in _tokens(options) if t.startswith("rating:")]) == 8
        assert chosen.answer == get_message("account.rating_set_short", rating=7)
        emby.set_parental_rating.assert_called_once_with(account.remote_id, 7, None)

    def test_rating_failure_is_an_alert(self, dispatcher, emby, member, account):
        emby.set_parental_rating.side_effect = ServerUnavailableError()

        response = dispatcher.handle_action(member, f"rating:{account.id}:7")

        assert response.show_alert is True
        assert response.ok is False

    def test_member_cannot_delete(self, dispatcher, account_service, member, account):
        response = dispatcher.handle_action(member, f"confirmdelete:{account.id}")

        assert response.answer == render_error(AdminRequiredError())
        assert account_service.count() == 1

    def test_admin_delete_confirmation(self, dispatcher, account_service, admin, account):
        confirm = dispatcher.handle_action(admin, f"delete:{account.id}")
        done = dispatcher.handle_action(admin, f"confirmdelete:{account.id}")

        assert f"confirmdelete:{account.id}" in _tokens(confirm)
        assert done.text == get_message("account.deleted", username="alice_tv")
        assert account_service.count() == 0

    def test_other_members_account_is_refused(self, dispatcher, other_member, account):
        response = dispatcher.handle_action(other_member, f"account:{account.id}")

        assert response.answer == get_message("errors.account_unauthorized")

    def test_malformed_token(self, dispatcher, member):
        response = dispatcher.handle_action(member, "account:abc")

        assert response.ok is False

    def test_cancel_button(self, dispatcher, state_machine, member, account):
        dispatcher.handle_action(member, f"pwd:{account.id}")

        response = dispatcher.handle_action(member, "cancel")

        assert response.text == get_message("general.cancelled")
        assert state_machine.get_state(member.external_id)[0] == ConversationState.IDLE


class TestAdminCommands:
    """Tests for the admin commands."""

    def test_grant_defaults_to_one(self, dispatcher, user_service, admin, member):
        user_service.get_or_create(member)

        text = dispatcher.handle_command(admin, "grant", [member.external_id])

        assert text == get_message("admin.grant_new", name="@alice", quota=1)
        assert user_service.get_by_external_id(member.external_id).account_quota == 1

    def test_grant_by_mention_reports_excess(
        self, dispatcher, account_service, user_service, admin, member, member_user
    ):
        account_service.create("one", member_user.id)
        account_service.create("two", member_user.id)

        text = dispatcher.handle_command(admin, "grant", [f"<@{member.external_id}>", "1"])

        assert get_message("admin.grant_over", excess=1) in text

    def test_grant_zero_revokes(self, dispatcher, admin, member, member_user):
        text = dispatcher.handle_command(admin, "grant", ["@alice", "0"])

        assert text == get_message("admin.grant_revoked", name="@alice", count=0)

    def test_grant_unknown_user(self, dispatcher, admin):
        response = dispatcher.dispatch(admin, "grant", ["123456"])

        assert response.ok is False

    def test_grant_rejects_garbage_reference(self, dispatcher, admin):
        response = dispatcher.dispatch(admin, "grant", ["alice"])

        assert response.ok is False

    def test_set_role_and_block(self, dispatcher, user_service, admin, member):
        user_service.get_or_create(member)

        dispatcher.handle_command(admin, "setrole", [member.external_id, "admin"])
        dispatcher.handle_command(admin, "blockuser", [member.external_id])

        user = user_service.get_by_external_id(member.external_id)
        assert user.is_admin() is True
        assert user.is_blocked is True

        dispatcher.handle_command(admin, "unblockuser", [member.external_id])
        assert user_service.get_by_external_id(member.external_id).is_blocked is False

    def test_admin_cannot_block_self(self, dispatcher, user_service, admin):
        response = dispatcher.dispatch(admin, "blockuser", [admin.external_id])

        assert response.ok is False
        assert user_service.get_by_external_id(admin.external_id).is_blocked is False

    def test_users_listing_is_paginated(self, dispatcher, user_service, admin, member):
        user_service.get_or_create(member)

        text = dispatcher.handle_command(admin, "users", [])

        assert "@alice" in text
        assert "@root" in text
        assert dispatcher.handle_command(admin, "users", ["5"]) == get_message("admin.users_empty")

    def test_stats_without_accounts(self, dispatcher, admin):
        response = dispatcher.dispatch(admin, "stats", [])

        assert response.ok is True
        assert "0.00" in response.text

    def test_stats_counts_every_failed_sync(self, dispatcher, account_store, admin, member_user):
        """Failed syncs are counted in full, not just the first page."""
        # Arrange
        for index in range(55):
            failed = Account(username=f"tv_{index}", password_hash="hash", user_id=member_user.id)
            failed.mark_sync_failed("emby down")
            account_store.create(failed)

        # Act
        response = dispatcher.dispatch(admin, "stats", [])

        # Assert
        assert "Sync failed: 55" in response.text

    def test_suspend_activate_and_delete(self, dispatcher, account_service, admin, member_user):
        account, _ = account_service.create("alice_tv", member_user.id)

        dispatcher.handle_command(admin, "suspend", ["alice_tv"])
        assert account_service.get(account.id).status == AccountStatus.SUSPENDED

        dispatcher.handle_command(admin, "activate", ["ALICE_TV"])
        assert account_service.get(account.id).status == AccountStatus.ACTIVE

        dispatcher.handle_command(admin, "deleteaccount", ["alice_tv"])
        assert account_service.count() == 0

    def test_set_device_limit(self, dispatcher, account_service, emby, admin, member_user):
        account, _ = account_service.create("alice_tv", member_user.id)

        dispatcher.handle_command(admin, "setdevicelimit", ["alice_tv", "5"])

        assert account_service.get(account.id).max_devices == 5
        emby.set_max_active_sessions.assert_called_once_with(account.remote_id, 5, None)

    def test_accounts_listing_shows_owner(self, dispatcher, account_service, admin, member_user):
        account_service.create("alice_tv", member_user.id)

        text = dispatcher.handle_command(admin, "accounts", [])

        assert "alice_tv" in text
        assert "@alice" in text

    def test_sync_account(self, dispatcher, account_service, emby, admin, member_user):
        account, _ = account_service.create("alice_tv", member_user.id)

        text = dispatcher.handle_command(admin, "syncaccount", ["alice_tv"])

        assert text.startswith(get_message("emby.resync_done"))
        emby.set_max_active_sessions.assert_called_once()

    def test_check_emby(self, dispatcher, emby, admin):
        emby.ping.return_value = SystemInfo(server_name="Home", version="4.8")

        text = dispatcher.handle_command(admin, "checkemby", [])

        assert text == get_message(
            "emby.check_ok", server_name="Home", version="4.8", url=emby.base_url
        )

    def test_check_emby_failure(self, dispatcher, emby, admin):
        emby.ping.side_effect = ServerUnavailableError()

        response = dispatcher.dispatch(admin, "checkemby", [])

        assert response.ok is False
        assert response.text == render_error(ServerUnavailableError())

    def test_playing_splits_sessions(self, dispatcher, emby, admin):
        """Playing and paused sessions are listed in their own sections."""
        # Arrange
        film = NowPlayingItem(id="1", name="Film", run_time_ticks=1000)
        emby.get_sessions.return_value = [
            SessionInfo(id="a", user_name="alice", now_playing=film, position_ticks=500, has_play_state=True),
            SessionInfo(id="b", user_name="bob", now_playing=film, has_play_state=True, is_paused=True),
            SessionInfo(id="c", user_name="carol"),
        ]

        # Act
        text = dispatcher.handle_command(admin, "playing", [])

        # Assert
        assert get_message("emby.playing_section", count=1) in text
        assert get_message("emby.paused_section", count=1) in text
        assert get_message("emby.sessions_total", total=3) in text
        assert "50.0" in text

    def test_no_sessions(self, dispatcher, emby, admin):
        emby.get_sessions.return_value = []

        assert dispatcher.handle_command(admin, "playing", []) == get_message("emby.no_sessions")

    def test_emby_users(self, dispatcher, emby, admin):
        emby.list_users.return_value = [
            EmbyUser(id="1", name="root", policy={"IsAdministrator": True}),
            EmbyUser(id="2", name="alice_tv"),
        ]

        text = dispatcher.handle_command(admin, "embyusers", [])

        assert "root" in text
        assert "alice_tv" in text

    def test_update_policies_uses_default_device_limit(self, dispatcher, emby, admin, settings):
        emby.batch_update_non_admin_policies.return_value = (4, 1)

        text = dispatcher.handle_command(admin, "updatepolicies", [])

        emby.batch_update_non_admin_policies.assert_called_once_with(settings.default_max_devices)
        assert text == get_message("emby.policies_updated", updated=4, failed=1)

    def test_code_lifecycle(self, dispatcher, invite_service, admin, member):
        """Generate, inspect, redeem and revoke a code through commands."""
        # Arrange
        dispatcher.handle_command(admin, "generatecode", ["2", "7", "for", "friends"])
        code = invite_service.list(0, 1)[0]

        # Act
        dispatcher.handle_command(member, "redeem", [code.code])
        info = dispatcher.handle_command(admin, "codeinfo", [code.code])
        listing = dispatcher.handle_command(admin, "listcodes", [])
        dispatcher.handle_command(admin, "revokecode", [code.code])

        # Assert
        assert code.description == "for friends"
        assert code.expire_at is not None
        assert "1/2" in info
        assert code.code in listing
        assert invite_service.get_by_code(code.code).status.value == "revoked"

    def test_generate_code_rejects_bad_max_uses(self, dispatcher, admin):
        response = dispatcher.dispatch(admin, "generatecode", ["0"])

        assert response.text == get_message("errors.invalid_max_uses")
