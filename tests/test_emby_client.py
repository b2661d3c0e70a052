"""Tests for the Emby HTTP client, with the requests session mocked out."""

import threading
from unittest.mock import MagicMock, patch

import pytest
import requests

from embycord.emby_client import EmbyClient, create_default_policy
from embycord.errors import (
    EmbyServerError,
    EmbyUnauthorizedError,
    EmbyUserAlreadyExistsError,
    EmbyUserNotFoundError,
    InvalidResponseError,
    RequestCancelledError,
    ServerUnavailableError,
    SyncDisabledError,
)


def _response(status_code: int = 200, payload=None, text: str = ""):
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.text = text
    response.content = b"x" if payload is not None else b""
    response.json.return_value = payload
    return response


@pytest.fixture
def client():
    emby = EmbyClient("http://emby.local:8096/", "key", timeout=5, retry_count=2)
    emby.backoff_seconds = 0
    emby.session = MagicMock()
    return emby


class TestEmbyClientInit:
    """Tests for client construction."""

    def test_missing_credentials_raise(self):
        with pytest.raises(ValueError):
            EmbyClient("", "", enabled=True)

    def test_disabled_client_needs_no_credentials(self):
        """A disabled client is built without a URL and refuses every call."""
        # Arrange
        emby = EmbyClient("", "", enabled=False)

        # Act / Assert
        assert emby.is_enabled() is False
        with pytest.raises(SyncDisabledError):
            emby.list_users()

    def test_token_header_and_trailing_slash(self):
        emby = EmbyClient("http://emby.local/", "secret")

        assert emby.base_url == "http://emby.local"
        assert emby.session.headers["X-Emby-Token"] == "secret"


class TestEmbyClientRetries:
    """Tests for the retry loop in _request."""

    def test_transient_failure_is_retried(self, client):
        """A 500 followed by a success returns the success."""
        # Arrange
        client.session.request.side_effect = [
            _response(500, text="oops"),
            _response(200, {"ServerName": "Home", "Version": "4.8"}),
        ]

        # Act
        info = client.ping()

        # Assert
        assert info.server_name == "Home"
        assert client.session.request.call_count == 2

    def test_gives_up_after_retry_count(self, client):
        """retry_count=2 means three attempts before the last error is raised."""
        # Arrange
        client.session.request.side_effect = requests.exceptions.ConnectionError("refused")

        # Act
        with pytest.raises(ServerUnavailableError):
            client.ping()

        # Assert
        assert client.session.request.call_count == 3

    def test_server_error_keeps_status(self, client):
        client.session.request.return_value = _response(503, text="maintenance")

        with pytest.raises(EmbyServerError) as exc_info:
            client.ping()

        assert exc_info.value.status_code == 503

    @pytest.mark.parametrize(
        "status, error",
        [
            (401, EmbyUnauthorizedError),
            (404, EmbyUserNotFoundError),
            (409, EmbyUserAlreadyExistsError),
        ],
    )
    def test_terminal_statuses_are_not_retried(self, client, status, error):
        client.session.request.return_value = _response(status)

        with pytest.raises(error):
            client.list_users()

        assert client.session.request.call_count == 1

    def test_backoff_is_linear(self, client):
        """Attempt N waits N times the backoff."""
        # Arrange
        client.backoff_seconds = 1.0
        client.session.request.side_effect = requests.exceptions.Timeout("slow")

        # Act
        with patch("embycord.emby_client.time.sleep") as sleep:
            with pytest.raises(ServerUnavailableError):
                client.ping()

        # Assert
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_cancel_event_aborts(self, client):
        """A set cancel event stops the call before the first attempt."""
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(RequestCancelledError):
            client.ping(cancel_event=cancel)

        client.session.request.assert_not_called()

    def test_invalid_json_raises(self, client):
        response = _response(200, {})
        response.json.side_effect = ValueError("bad json")
        client.session.request.return_value = response

        with pytest.raises(InvalidResponseError):
            client.ping()


class TestEmbyClientUsers:
    """Tests for the user endpoints."""

    def test_create_user(self, client):
        # Arrange
        client.session.request.return_value = _response(
            200, {"Id": "u1", "Name": "alice", "HasPassword": True}
        )

        # Act
        user = client.create_user("alice", "s3cret!")

        # Assert
        assert user.id == "u1"
        method, url = client.session.request.call_args.args
        assert method == "POST"
        assert url == "http://emby.local:8096/emby/Users/New"
        assert client.session.request.call_args.kwargs["json"] == {
            "Name": "alice",
            "Password": "s3cret!",
        }

    def test_create_user_sets_password_when_ignored(self, client):
        """A user created without a password gets it through the password endpoint."""
        # Arrange
        client.session.request.side_effect = [
            _response(200, {"Id": "u1", "Name": "alice", "HasPassword": False}),
            _response(204),
            _response(200, {"Id": "u1", "Name": "alice", "HasPassword": True}),
        ]

        # Act
        user = client.create_user("alice", "s3cret!")

        # Assert
        assert user.has_password is True
        password_call = client.session.request.call_args_list[1]
        assert password_call.args[1].endswith("/Users/u1/Password")
        assert password_call.kwargs["data"] == {"NewPw": "s3cret!"}

    def test_create_user_rolls_back_when_password_fails(self, client):
        """If the password cannot be set the half-created user is deleted."""
        # Arrange
        client.retry_count = 0
        client.session.request.side_effect = [
            _response(200, {"Id": "u1", "Name": "alice", "HasPassword": False}),
            _response(500, text="nope"),
            _response(204),
        ]

        # Act
        with pytest.raises(EmbyServerError):
            client.create_user("alice", "s3cret!")

        # Assert
        delete_call = client.session.request.call_args_list[2]
        assert delete_call.args == ("DELETE", "http://emby.local:8096/emby/Users/u1")

    def test_create_existing_user_names_it(self, client):
        client.session.request.return_value = _response(409)

        with pytest.raises(EmbyUserAlreadyExistsError) as exc_info:
            client.create_user("alice", "s3cret!")

        assert exc_info.value.name == "alice"

    def test_get_user_by_name(self, client):
        client.session.request.return_value = _response(
            200, [{"Id": "u1", "Name": "alice"}, {"Id": "u2", "Name": "bob"}]
        )

        assert client.get_user_by_name("bob").id == "u2"
        with pytest.raises(EmbyUserNotFoundError):
            client.get_user_by_name("carol")

    def test_list_users_rejects_non_list(self, client):
        client.session.request.return_value = _response(200, {"Items": []})

        with pytest.raises(InvalidResponseError):
            client.list_users()

    def test_disable_user_keeps_other_policy_fields(self, client):
        """Policy edits read the current policy and change one field."""
        # Arrange
        client.session.request.side_effect = [
            _response(200, {"Id": "u1", "Name": "alice", "Policy": {"MaxParentalRating": 7}}),
            _response(204),
        ]

        # Act
        client.disable_user("u1")

        # Assert
        policy = client.session.request.call_args_list[1].kwargs["json"]
        assert policy == {"MaxParentalRating": 7, "IsDisabled": True}

    def test_batch_update_skips_admins(self, client):
        # Arrange
        client.session.request.side_effect = [
            _response(
                200,
                [
                    {"Id": "a", "Name": "admin", "Policy": {"IsAdministrator": True}},
                    {"Id": "u1", "Name": "alice", "Policy": {"IsDisabled": True}},
                    {"Id": "u2", "Name": "bob", "Policy": {"SimultaneousStreamLimit": 5}},
                ],
            ),
            _response(204),
            _response(204),
        ]

        # Act
        updated, failed = client.batch_update_non_admin_policies(max_devices=3)

        # Assert
        assert (updated, failed) == (2, 0)
        alice_policy = client.session.request.call_args_list[1].kwargs["json"]
        bob_policy = client.session.request.call_args_list[2].kwargs["json"]
        assert alice_policy["IsDisabled"] is True
        assert alice_policy["SimultaneousStreamLimit"] == 3
        assert bob_policy["SimultaneousStreamLimit"] == 5

    def test_get_sessions(self, client):
        client.session.request.return_value = _response(
            200,
            [
                {
                    "Id": "s1",
                    "UserName": "alice",
                    "NowPlayingItem": {"Id": "i1", "Name": "Film", "RunTimeTicks": 100},
                    "PlayState": {"PositionTicks": 50},
                }
            ],
        )

        sessions = client.get_sessions()

        assert sessions[0].user_name == "alice"
        assert sessions[0].progress() == 50.0


class TestDefaultPolicy:
    """Tests for the provisioning policy."""

    def test_policy_limits_streams_and_hides_user(self):
        policy = create_default_policy(4)

        assert policy["SimultaneousStreamLimit"] == 4
        assert policy["IsAdministrator"] is False
        assert policy["IsHidden"] is True
        assert policy["EnableContentDeletion"] is False
