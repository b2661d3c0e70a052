"""Shared fixtures: a throwaway sqlite database, the services on top of it and a mocked Emby client."""

from unittest.mock import MagicMock

import pytest

from embycord import passwords
from embycord.account_service import AccountService, AccountSettings
from embycord.commands.dispatcher import CommandDispatcher
from embycord.database import (
    Database,
    SqliteAccountStore,
    SqliteInviteCodeStore,
    SqliteUserStore,
)
from embycord.emby_client import EmbyClient
from embycord.invite_service import InviteService
from embycord.models import EmbyUser, Principal
from embycord.state_machine import StateMachine
from embycord.user_service import UserService

ADMIN_DISCORD_ID = "900000000000000001"


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch):
    """Cheap bcrypt rounds keep the suite fast."""
    monkeypatch.setattr(passwords, "BCRYPT_ROUNDS", 4)


@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "test.db"))


@pytest.fixture
def user_store(db):
    return SqliteUserStore(db)


@pytest.fixture
def account_store(db):
    return SqliteAccountStore(db)


@pytest.fixture
def invite_store(db):
    return SqliteInviteCodeStore(db)


@pytest.fixture
def emby():
    client = MagicMock(spec=EmbyClient)
    client.base_url = "http://emby.local:8096"
    client.is_enabled.return_value = True
    client.create_user.side_effect = lambda name, password, cancel_event=None: EmbyUser(
        id=f"emby-{name}", name=name, has_password=True
    )
    return client


@pytest.fixture
def settings():
    return AccountSettings(
        default_expire_days=30,
        default_max_devices=3,
        password_length=12,
        max_accounts_per_user=3,
        max_accounts_per_admin=-1,
        username_prefix="emby_",
    )


@pytest.fixture
def user_service(user_store):
    return UserService(user_store)


@pytest.fixture
def account_service(account_store, user_service, emby, settings):
    return AccountService(account_store, user_service, emby, settings)


@pytest.fixture
def invite_service(invite_store, user_service):
    return InviteService(invite_store, user_service)


@pytest.fixture
def state_machine():
    return StateMachine()


@pytest.fixture
def dispatcher(user_service, account_service, invite_service, emby, state_machine):
    return CommandDispatcher(
        user_service,
        account_service,
        invite_service,
        emby,
        state_machine,
        admin_ids=[ADMIN_DISCORD_ID],
    )


@pytest.fixture
def member():
    return Principal(external_id="100000000000000001", username="alice", first_name="Alice")


@pytest.fixture
def other_member():
    return Principal(external_id="100000000000000002", username="bob", first_name="Bob")


@pytest.fixture
def admin():
    return Principal(external_id=ADMIN_DISCORD_ID, username="root", first_name="Root")


@pytest.fixture
def make_user(user_service):
    """Register a principal and give it a quota."""

    def _make(principal, quota=0):
        user = user_service.get_or_create(principal)
        if quota:
            user = user_service.set_quota(user.id, quota)
        return user

    return _make
