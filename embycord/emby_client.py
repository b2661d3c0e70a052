"""Client for interacting with the Emby server user-management API."""

import json
import logging
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import requests

from embycord.errors import (
    TERMINAL_EMBY_ERRORS,
    EmbyError,
    EmbyServerError,
    EmbyUnauthorizedError,
    EmbyUserAlreadyExistsError,
    EmbyUserNotFoundError,
    InvalidResponseError,
    RequestCancelledError,
    ServerUnavailableError,
    SyncDisabledError,
)
from embycord.models import EmbyUser, SessionInfo, SystemInfo

REDACTED_FIELDS = ("Password", "Pw", "NewPw", "CurrentPw")


def create_default_policy(max_devices: int) -> Dict[str, Any]:
    """Policy applied to every account the bot provisions.

    Hidden from the login screen, playback and remote access allowed, every
    library visible, no transcoding/downloads/deletion, and the stream limit
    set to the account's device limit.
    """
    return {
        "IsAdministrator": False,
        "IsHidden": True,
        "IsHiddenRemotely": True,
        "IsHiddenFromUnusedDevices": False,
        "IsDisabled": False,
        "LockedOutDate": 0,
        "MaxParentalRating": 10,
        "AllowTagOrRating": False,
        "BlockedTags": [],
        "IsTagBlockingModeInclusive": False,
        "IncludeTags": [],
        "EnableUserPreferenceAccess": True,
        "AccessSchedules": [],
        "BlockUnratedItems": [],
        "EnableRemoteControlOfOtherUsers": False,
        "EnableSharedDeviceControl": False,
        "EnableRemoteAccess": True,
        "EnableLiveTvManagement": False,
        "EnableLiveTvAccess": False,
        "EnableMediaPlayback": True,
        "EnableAudioPlaybackTranscoding": False,
        "EnableVideoPlaybackTranscoding": False,
        "EnablePlaybackRemuxing": False,
        "EnableContentDeletion": False,
        "RestrictedFeatures": [],
        "EnableContentDeletionFromFolders": [],
        "EnableContentDownloading": False,
        "EnableSubtitleDownloading": False,
        "EnableSubtitleManagement": False,
        "EnableSyncTranscoding": False,
        "EnableMediaConversion": False,
        "EnabledChannels": [],
        "EnableAllChannels": True,
        "EnabledFolders": [],
        "EnableAllFolders": True,
        "InvalidLoginAttemptCount": 0,
        "EnablePublicSharing": False,
        "RemoteClientBitrateLimit": 0,
        "AuthenticationProviderId": "",
        "ExcludedSubFolders": [],
        "SimultaneousStreamLimit": max_devices,
        "EnabledDevices": [],
        "EnableAllDevices": True,
    }


class EmbyClient:
    """Client for interacting with the Emby API

    Every call goes through ``_request``, which retries transient failures
    ``retry_count`` times with a linear backoff (attempt N waits N seconds).
    Unauthorized, not-found and already-exists answers are returned at once.
    All methods block; call them from a worker thread in async code.
    """

    backoff_seconds = 1.0

    def __init__(
        self,
        server_url: str,
        api_key: str,
        timeout: int = 30,
        retry_count: int = 3,
        enabled: bool = True,
    ):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.enabled = enabled
        if enabled and not all([server_url, api_key]):
            self.logger.critical(
                "Missing Emby server URL or API key at client initialization."
            )
            raise ValueError("Missing required Emby server URL or API key")

        self.base_url = (server_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout
        self.retry_count = max(retry_count, 0)
        self.session = requests.Session()
        self._setup_session()
        if not enabled:
            self.logger.warning("Emby sync is disabled; remote calls will be refused.")

    def _setup_session(self) -> None:
        """Setup the session headers and connection pooling"""
        self.session.headers.update(
            {
                "User-Agent": "Embycord/1.0",
                "Accept": "application/json",
                "X-Emby-Token": self.api_key,
            }
        )
        # Retries are counted by _request, so the adapter must not add its own
        adapter = requests.adapters.HTTPAdapter(max_retries=0)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def is_enabled(self) -> bool:
        return self.enabled

    def _log_api_call(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        response: Optional[requests.Response] = None,
    ) -> None:
        """Log API calls in debug mode"""
        if not self.logger.isEnabledFor(logging.DEBUG):
            return

        safe_payload = payload
        if payload:
            safe_payload = {
                key: ("***REDACTED***" if key in REDACTED_FIELDS else value)
                for key, value in payload.items()
            }

        log_data = {
            "method": method,
            "url": url,
            "payload": safe_payload,
            "status_code": response.status_code if response is not None else None,
            "response_body": None,
        }
        if response is not None:
            log_data["response_body"] = (response.text or "")[:1000]

        self.logger.debug(f"Emby API Call: {json.dumps(log_data, indent=2, default=str)}")

    def _error_for_status(self, response: requests.Response) -> EmbyError:
        if response.status_code == 401:
            return EmbyUnauthorizedError()
        if response.status_code == 404:
            return EmbyUserNotFoundError()
        if response.status_code == 409:
            return EmbyUserAlreadyExistsError()
        return EmbyServerError(response.status_code, (response.text or "")[:500])

    def _request_once(
        self,
        method: str,
        path: str,
        json_body: Any = None,
        form: Optional[Dict[str, str]] = None,
        expect_json: bool = True,
    ) -> Any:
        url = f"{self.base_url}/emby{path}"
        try:
            if form is not None:
                response = self.session.request(
                    method,
                    url,
                    data=form,
                    headers={
                        "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8"
                    },
                    timeout=self.timeout,
                )
            else:
                response = self.session.request(
                    method, url, json=json_body, timeout=self.timeout
                )
        except requests.exceptions.RequestException as e:
            raise ServerUnavailableError(f"emby server unavailable: {e}") from e

        self._log_api_call(
            method,
            url,
            json_body if isinstance(json_body, dict) else form,
            response,
        )

        if response.status_code >= 400:
            raise self._error_for_status(response)

        if not expect_json or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponseError(str(e)) from e

    def _wait_before_retry(
        self, attempt: int, cancel_event: Optional[threading.Event]
    ) -> None:
        delay = attempt * self.backoff_seconds
        if cancel_event is None:
            time.sleep(delay)
        elif cancel_event.wait(delay):
            raise RequestCancelledError()

    def _request(
        self,
        method: str,
        path: str,
        json_body: Any = None,
        form: Optional[Dict[str, str]] = None,
        expect_json: bool = True,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """Perform a request with retries.

        Args:
            method: HTTP verb
            path: API path below ``/emby``
            json_body: JSON payload, ignored when ``form`` is given
            form: form-urlencoded payload
            expect_json: parse the response body as JSON
            cancel_event: setting this event aborts the call between attempts

        Raises:
            SyncDisabledError: the client is disabled
            RequestCancelledError: ``cancel_event`` was set
            EmbyError: the last failure once retries are used up
        """
        if not self.enabled:
            raise SyncDisabledError()

        last_error: Optional[EmbyError] = None
        for attempt in range(self.retry_count + 1):
            if attempt > 0:
                self.logger.debug(
                    f"Emby API retry attempt {attempt}/{self.retry_count} for {method} {path}"
                )
                self._wait_before_retry(attempt, cancel_event)
            if cancel_event is not None and cancel_event.is_set():
                raise RequestCancelledError()

            try:
                return self._request_once(method, path, json_body, form, expect_json)
            except TERMINAL_EMBY_ERRORS:
                raise
            except EmbyError as e:
                last_error = e
                self.logger.warning(
                    f"Emby API {method} {path} failed (attempt {attempt + 1}/{self.retry_count + 1}): {e}"
                )

        raise last_error

    # --- System ---

    def ping(self, cancel_event: Optional[threading.Event] = None) -> SystemInfo:
        """Check the server is reachable and the API key is accepted."""
        data = self._request("GET", "/System/Info", cancel_event=cancel_event)
        info = SystemInfo.from_api(data or {})
        self.logger.info(
            f"Connected to Emby server '{info.server_name}' (version {info.version})"
        )
        return info

    # --- Users ---

    def create_user(
        self, name: str, password: str, cancel_event: Optional[threading.Event] = None
    ) -> EmbyUser:
        """Create an Emby user with a password.

        Some servers ignore the password sent with /Users/New. When the new
        user reports no password, it is set through the password endpoint; if
        that also fails the half-created user is deleted and the error raised.
        """
        try:
            data = self._request(
                "POST",
                "/Users/New",
                json_body={"Name": name, "Password": password},
                cancel_event=cancel_event,
            )
        except EmbyUserAlreadyExistsError:
            raise EmbyUserAlreadyExistsError(name) from None
        user = EmbyUser.from_api(data or {})
        if not user.id:
            raise InvalidResponseError("created user has no Id")
        self.logger.info(f"Emby user created: {user.name} (ID: {user.id})")

        if password and not user.has_password and not user.has_configured_password:
            self.logger.warning(
                f"Password not set on creation for Emby user {user.name}, using password endpoint."
            )
            try:
                self.update_password(user.id, password, cancel_event=cancel_event)
            except EmbyError as e:
                self.logger.error(f"Failed to set password for Emby user {user.name}: {e}")
                try:
                    self.delete_user(user.id)
                except EmbyError as delete_error:
                    self.logger.error(
                        f"Failed to remove half-created Emby user {user.name}: {delete_error}"
                    )
                raise
            try:
                user = self.get_user(user.id, cancel_event=cancel_event)
            except EmbyError as e:
                self.logger.warning(f"Could not re-fetch Emby user {user.name}: {e}")
        return user

    def get_user(
        self, user_id: str, cancel_event: Optional[threading.Event] = None
    ) -> EmbyUser:
        try:
            data = self._request("GET", f"/Users/{user_id}", cancel_event=cancel_event)
        except EmbyUserNotFoundError:
            raise EmbyUserNotFoundError(user_id) from None
        return EmbyUser.from_api(data or {})

    def list_users(self, cancel_event: Optional[threading.Event] = None) -> List[EmbyUser]:
        data = self._request("GET", "/Users", cancel_event=cancel_event)
        if not isinstance(data, list):
            raise InvalidResponseError("expected a list of users")
        return [EmbyUser.from_api(item) for item in data]

    def get_user_by_name(
        self, name: str, cancel_event: Optional[threading.Event] = None
    ) -> EmbyUser:
        for user in self.list_users(cancel_event=cancel_event):
            if user.name == name:
                return user
        raise EmbyUserNotFoundError(name)

    def delete_user(
        self, user_id: str, cancel_event: Optional[threading.Event] = None
    ) -> None:
        try:
            self._request(
                "DELETE",
                f"/Users/{user_id}",
                expect_json=False,
                cancel_event=cancel_event,
            )
        except EmbyUserNotFoundError:
            raise EmbyUserNotFoundError(user_id) from None
        self.logger.info(f"Emby user deleted: {user_id}")

    def update_password(
        self,
        user_id: str,
        new_password: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        # The endpoint only accepts form data with NewPw, the way the web UI sends it
        self._request(
            "POST",
            f"/Users/{user_id}/Password",
            form={"NewPw": new_password},
            expect_json=False,
            cancel_event=cancel_event,
        )
        self.logger.info(f"Emby password updated for user {user_id}")

    # --- Policies ---

    def get_user_policy(
        self, user_id: str, cancel_event: Optional[threading.Event] = None
    ) -> Dict[str, Any]:
        return self.get_user(user_id, cancel_event=cancel_event).policy

    def update_user_policy(
        self,
        user_id: str,
        policy: Dict[str, Any],
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._request(
            "POST",
            f"/Users/{user_id}/Policy",
            json_body=policy,
            expect_json=False,
            cancel_event=cancel_event,
        )
        self.logger.debug(f"Emby policy updated for user {user_id}")

    def _modify_policy(
        self,
        user_id: str,
        changes: Dict[str, Any],
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        policy = dict(self.get_user_policy(user_id, cancel_event=cancel_event))
        policy.update(changes)
        self.update_user_policy(user_id, policy, cancel_event=cancel_event)

    def set_max_active_sessions(
        self,
        user_id: str,
        max_sessions: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._modify_policy(
            user_id, {"SimultaneousStreamLimit": max_sessions}, cancel_event
        )

    def set_parental_rating(
        self,
        user_id: str,
        rating: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._modify_policy(user_id, {"MaxParentalRating": rating}, cancel_event)

    def disable_user(
        self, user_id: str, cancel_event: Optional[threading.Event] = None
    ) -> None:
        self._modify_policy(user_id, {"IsDisabled": True}, cancel_event)
        self.logger.info(f"Emby user disabled: {user_id}")

    def enable_user(
        self, user_id: str, cancel_event: Optional[threading.Event] = None
    ) -> None:
        self._modify_policy(user_id, {"IsDisabled": False}, cancel_event)
        self.logger.info(f"Emby user enabled: {user_id}")

    def batch_update_non_admin_policies(self, max_devices: int) -> Tuple[int, int]:
        """Apply the default policy to every non-administrator Emby user.

        Each user keeps its disabled flag and stream limit (``max_devices``
        when it has none). Returns (updated, failed).
        """
        updated, failed = 0, 0
        for user in self.list_users():
            if user.is_admin():
                self.logger.debug(f"Skipping administrator {user.name} in batch policy update")
                continue
            policy = create_default_policy(
                user.policy.get("SimultaneousStreamLimit") or max_devices
            )
            policy["IsDisabled"] = user.is_disabled()
            try:
                self.update_user_policy(user.id, policy)
                updated += 1
            except EmbyError as e:
                failed += 1
                self.logger.error(f"Failed to update policy for Emby user {user.name}: {e}")
        self.logger.info(f"Batch policy update finished: {updated} updated, {failed} failed")
        return updated, failed

    # --- Sessions ---

    def get_sessions(self, cancel_event: Optional[threading.Event] = None) -> List[SessionInfo]:
        data = self._request("GET", "/Sessions", cancel_event=cancel_event)
        if not isinstance(data, list):
            raise InvalidResponseError("expected a list of sessions")
        return [SessionInfo.from_api(item) for item in data]
