"""Account lifecycle and Emby synchronization.

The local database is the source of truth. Every mutation is written locally
first; the matching Emby call is attempted afterwards and its outcome is
recorded on the account (``sync_status``, ``sync_error``, ``last_sync_at``)
with a second write. Emby failures never undo or block the local change; they
stay visible on the account until an admin resyncs it or the reconciler
retries it.
"""

import datetime
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from embycord.emby_client import EmbyClient, create_default_policy
from embycord.errors import (
    AccountAlreadyExistsError,
    AccountLimitExceededError,
    AccountNotFoundError,
    AccountNotSyncedError,
    AccountUnauthorizedError,
    EmbyError,
    EmbyUserAlreadyExistsError,
    EmbyUserNotFoundError,
    NotAuthorizedError,
    QuotaExceededError,
    SyncDisabledError,
    ValidationError,
)
from embycord.models import (
    Account,
    AccountStatus,
    AccountWithUser,
    SyncStatus,
    User,
)
from embycord.passwords import generate_password, hash_password
from embycord.stores import AccountStore
from embycord.timeutil import utcnow
from embycord.user_service import UserService
from embycord.validators import (
    sanitize_username,
    validate_days,
    validate_max_devices,
    validate_password,
    validate_username,
)


@dataclass
class AccountSettings:
    """Account policy, read from the ``account`` and ``emby`` config sections."""

    default_expire_days: int = 30
    default_max_devices: int = 3
    password_length: int = 12
    max_accounts_per_user: int = 3
    max_accounts_per_admin: int = -1  # -1 means unlimited
    username_prefix: str = ""  # only used to suggest usernames
    enable_sync: bool = True
    sync_on_create: bool = True
    sync_on_delete: bool = True


class AccountService:
    """Sole writer of account state."""

    def __init__(
        self,
        store: AccountStore,
        users: UserService,
        emby_client: Optional[EmbyClient],
        settings: AccountSettings,
    ):
        self.store = store
        self.users = users
        self.emby = emby_client
        self.settings = settings
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def sync_enabled(self) -> bool:
        return (
            self.settings.enable_sync
            and self.emby is not None
            and self.emby.is_enabled()
        )

    # --- Preconditions ---

    def _check_quota(self, owner: User, current: int) -> None:
        if owner.account_quota == 0:
            raise NotAuthorizedError()
        if current >= owner.account_quota:
            raise QuotaExceededError(current, owner.account_quota)

    def _check_account_limit(self, owner: User, current: int) -> None:
        limit = (
            self.settings.max_accounts_per_admin
            if owner.is_admin()
            else self.settings.max_accounts_per_user
        )
        if limit < 0:
            return
        if current >= limit:
            raise AccountLimitExceededError(current, limit)

    def _prepare_new_account(self, username: str, owner_id: int) -> str:
        username = sanitize_username(username)
        validate_username(username)
        try:
            self.store.get_by_username(username)
        except AccountNotFoundError:
            pass
        else:
            raise AccountAlreadyExistsError(username)

        owner = self.users.get(owner_id)
        current = self.store.count_by_user(owner_id)
        self._check_quota(owner, current)
        self._check_account_limit(owner, current)
        return username

    def _default_expiry(self) -> Optional[datetime.datetime]:
        if self.settings.default_expire_days <= 0:
            return None
        return utcnow() + datetime.timedelta(days=self.settings.default_expire_days)

    # --- Sync helpers ---

    def _persist_sync_state(self, account: Account) -> None:
        """Second write after a remote attempt.

        The local mutation is already committed at this point, so a failure
        here is logged rather than raised; the account then shows its previous
        sync status until the next attempt.
        """
        try:
            self.store.update(account)
        except Exception as e:
            self.logger.error(
                f"Failed to record sync state for account {account.username}: {e}",
                exc_info=True,
            )

    def _provision_remote(
        self,
        account: Account,
        password: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Create the Emby mirror of ``account`` and record the outcome on it."""
        try:
            remote = self.emby.create_user(account.username, password, cancel_event)
        except EmbyUserAlreadyExistsError:
            # Left behind by an earlier attempt that died before recording it
            self.logger.warning(
                f"Emby user {account.username} already exists, adopting it"
            )
            try:
                existing = self.emby.get_user_by_name(account.username, cancel_event)
            except EmbyError as e:
                account.mark_sync_failed(f"get existing emby user failed: {e}")
                self.logger.warning(
                    f"Could not adopt existing Emby user {account.username}: {e}"
                )
                return
            if not existing.id:
                account.mark_sync_failed("existing emby user has no id")
                self.logger.warning(
                    f"Existing Emby user {account.username} came back without an id"
                )
                return
            account.mark_synced(existing.id)
            return
        except EmbyError as e:
            account.mark_sync_failed(f"create emby user failed: {e}")
            self.logger.warning(
                f"Account {account.username} created locally but Emby sync failed: {e}"
            )
            return

        try:
            self.emby.update_user_policy(
                remote.id, create_default_policy(account.max_devices), cancel_event
            )
        except EmbyError as e:
            self.logger.warning(
                f"Failed to apply default policy to Emby user {account.username}: {e}"
            )
        account.mark_synced(remote.id)
        self.logger.info(
            f"Account {account.username} synced to Emby (Emby ID: {remote.id})"
        )

    def _push_remote(
        self, account: Account, action: str, call: Callable[[], None]
    ) -> None:
        """Run a remote update for an already mirrored account and record it."""
        try:
            call()
        except EmbyError as e:
            account.mark_sync_failed(f"{action} failed: {e}")
            self.logger.warning(f"Emby {action} failed for account {account.username}: {e}")
        else:
            account.mark_synced(account.remote_id)
        self._persist_sync_state(account)

    def _should_push(self, account: Account) -> bool:
        return self.sync_enabled and bool(account.remote_id)

    # --- Creation ---

    def create(
        self,
        username: str,
        owner_id: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[Account, str]:
        """Create an account with a generated password.

        Returns the account and the plaintext password. The plaintext is not
        stored anywhere; the caller shows it once and drops it.

        Raises:
            ValidationError: malformed username
            AccountAlreadyExistsError: username taken
            NotAuthorizedError: the owner has a quota of 0
            QuotaExceededError: the owner already uses the whole quota
            AccountLimitExceededError: the per-role hard limit is reached
        """
        username = self._prepare_new_account(username, owner_id)
        plain_password = generate_password(self.settings.password_length)
        account = self._insert(username, hash_password(plain_password), owner_id)

        if self.sync_enabled and self.settings.sync_on_create:
            self._provision_remote(account, plain_password, cancel_event)
            self._persist_sync_state(account)
        return account, plain_password

    def create_with_password(
        self,
        username: str,
        password: str,
        owner_id: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> Account:
        """Same as create, with a password chosen by the caller."""
        validate_password(password)
        username = self._prepare_new_account(username, owner_id)
        account = self._insert(username, hash_password(password), owner_id)

        if self.sync_enabled and self.settings.sync_on_create:
            self._provision_remote(account, password, cancel_event)
            self._persist_sync_state(account)
        return account

    def _insert(self, username: str, password_hash: str, owner_id: int) -> Account:
        account = Account(
            username=username,
            password_hash=password_hash,
            user_id=owner_id,
            status=AccountStatus.ACTIVE,
            expire_at=self._default_expiry(),
            max_devices=self.settings.default_max_devices,
            sync_status=SyncStatus.PENDING,
        )
        account = self.store.create(account)
        self.logger.info(
            f"Created account {account.username} (ID: {account.id}) for user ID {owner_id}"
        )
        return account

    # --- Reads ---

    def get(self, account_id: int) -> Account:
        return self.store.get(account_id)

    def get_by_username(self, username: str) -> Account:
        return self.store.get_by_username(sanitize_username(username))

    def get_with_user(self, account_id: int) -> AccountWithUser:
        return self.store.get_with_user(account_id)

    def list_by_user(self, user_id: int) -> List[Account]:
        return self.store.list_by_user(user_id)

    def list_all(self, offset: int = 0, limit: int = 20) -> List[Account]:
        return self.store.list_all(offset, limit)

    def list_all_with_user(self, offset: int = 0, limit: int = 20) -> List[AccountWithUser]:
        return self.store.list_all_with_user(offset, limit)

    def list_by_sync_status(self, sync_status: SyncStatus, limit: int = 50) -> List[Account]:
        return self.store.list_by_sync_status(sync_status, limit)

    def count(self) -> int:
        return self.store.count()

    def count_by_user(self, user_id: int) -> int:
        return self.store.count_by_user(user_id)

    def count_by_status(self, status: AccountStatus) -> int:
        return self.store.count_by_status(status)

    def count_by_sync_status(self, sync_status: SyncStatus) -> int:
        return self.store.count_by_sync_status(sync_status)

    def check_ownership(self, account_id: int, user_id: int) -> Account:
        """Return the account if ``user_id`` owns it.

        Raises:
            AccountNotFoundError: no such account
            AccountUnauthorizedError: someone else owns it
        """
        account = self.store.get(account_id)
        if account.user_id != user_id:
            raise AccountUnauthorizedError()
        return account

    # --- Lifecycle ---

    def renew(self, account_id: int, days: int) -> Account:
        """Extend the expiry by ``days`` (1-3650).

        An expired account becomes active again and its Emby user is
        re-enabled. A suspended account stays suspended. A permanent account
        receives a finite expiry of now + days.
        """
        validate_days(days)
        account = self.store.get(account_id)
        was_expired = account.status == AccountStatus.EXPIRED
        account.renew(days)
        self.store.update(account)
        self.logger.info(
            f"Renewed account {account.username} by {days} days, expires {account.expire_at}"
        )

        if was_expired and account.is_active() and self._should_push(account):
            self._push_remote(
                account, "activate", lambda: self.emby.enable_user(account.remote_id)
            )
        return account

    def change_password(
        self,
        account_id: int,
        new_password: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Account:
        validate_password(new_password)
        account = self.store.get(account_id)
        account.password_hash = hash_password(new_password)
        self.store.update(account)
        self.logger.info(f"Password changed for account {account.username}")

        if self._should_push(account):
            self._push_remote(
                account,
                "update password",
                lambda: self.emby.update_password(
                    account.remote_id, new_password, cancel_event
                ),
            )
        return account

    def suspend(
        self, account_id: int, cancel_event: Optional[threading.Event] = None
    ) -> Account:
        account = self.store.get(account_id)
        account.suspend()
        self.store.update(account)
        self.logger.info(f"Suspended account {account.username}")

        if self._should_push(account):
            self._push_remote(
                account,
                "suspend",
                lambda: self.emby.disable_user(account.remote_id, cancel_event),
            )
        return account

    def activate(
        self, account_id: int, cancel_event: Optional[threading.Event] = None
    ) -> Account:
        account = self.store.get(account_id)
        account.activate()
        self.store.update(account)
        self.logger.info(f"Activated account {account.username}")

        if self._should_push(account):
            self._push_remote(
                account,
                "activate",
                lambda: self.emby.enable_user(account.remote_id, cancel_event),
            )
        return account

    def delete(
        self, account_id: int, cancel_event: Optional[threading.Event] = None
    ) -> None:
        """Delete the Emby user (best effort), then the local record."""
        account = self.store.get(account_id)

        if self.settings.sync_on_delete and self._should_push(account):
            try:
                self.emby.delete_user(account.remote_id, cancel_event)
                self.logger.info(f"Deleted Emby user of account {account.username}")
            except EmbyUserNotFoundError:
                self.logger.info(
                    f"Emby user of account {account.username} was already gone"
                )
            except EmbyError as e:
                self.logger.warning(
                    f"Failed to delete Emby user of account {account.username}, deleting locally anyway: {e}"
                )

        self.store.delete(account_id)
        self.logger.info(f"Deleted account {account.username} (ID: {account_id})")

    def set_device_limit(
        self,
        account_id: int,
        max_devices: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> Account:
        validate_max_devices(max_devices)
        account = self.store.get(account_id)
        account.max_devices = max_devices
        self.store.update(account)

        if self._should_push(account):
            self._push_remote(
                account,
                "set device limit",
                lambda: self.emby.set_max_active_sessions(
                    account.remote_id, max_devices, cancel_event
                ),
            )
        return account

    def set_parental_rating(
        self,
        account_id: int,
        rating: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> Account:
        """Change the Emby parental rating ceiling.

        The rating lives only on the Emby side, so unlike the other mutations
        a remote failure is raised to the caller.
        """
        if rating < 0:
            raise ValidationError("rating", "must not be negative")
        if not self.sync_enabled:
            raise SyncDisabledError()
        account = self.store.get(account_id)
        if not account.remote_id:
            raise AccountNotSyncedError(account.username)
        self.emby.set_parental_rating(account.remote_id, rating, cancel_event)
        self.logger.info(f"Parental rating of account {account.username} set to {rating}")
        return account

    # --- Recovery ---

    def _push_full_state(
        self,
        account: Account,
        password: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        if account.is_valid():
            self.emby.enable_user(account.remote_id, cancel_event)
        else:
            self.emby.disable_user(account.remote_id, cancel_event)
        self.emby.set_max_active_sessions(
            account.remote_id, account.max_devices, cancel_event
        )
        if password:
            self.emby.update_password(account.remote_id, password, cancel_event)

    def resync(
        self,
        account_id: int,
        password: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Account:
        """Retry synchronization of one account by hand.

        An account without an Emby user is provisioned again, which needs a
        password because only its hash is stored; the password also replaces
        the local hash. A mirrored account gets its enabled flag, device limit
        and (when given) password pushed again. The outcome is recorded on the
        account, which is returned.
        """
        if not self.sync_enabled:
            raise SyncDisabledError()
        account = self.store.get(account_id)

        if not account.remote_id:
            if not password:
                raise ValidationError(
                    "password", "required to create the missing Emby user"
                )
            validate_password(password)
            account.password_hash = hash_password(password)
            account.mark_sync_pending()
            self.store.update(account)
            self._provision_remote(account, password, cancel_event)
            self._persist_sync_state(account)
        else:
            if password:
                validate_password(password)
                account.password_hash = hash_password(password)
                self.store.update(account)
            self._push_remote(
                account,
                "resync",
                lambda: self._push_full_state(account, password, cancel_event),
            )
        return account

    def reconcile_failed(self, limit: int = 50) -> Tuple[int, int]:
        """Retry failed syncs of mirrored accounts.

        Accounts that never reached Emby are left alone since their password
        is unknown. Returns (fixed, still_failed).
        """
        if not self.sync_enabled:
            return 0, 0
        fixed, still_failed = 0, 0
        for account in self.store.list_by_sync_status(SyncStatus.FAILED, limit):
            if not account.remote_id:
                still_failed += 1
                continue
            self._push_remote(
                account, "reconcile", lambda: self._push_full_state(account)
            )
            if account.sync_status == SyncStatus.SYNCED:
                fixed += 1
            else:
                still_failed += 1
        if fixed or still_failed:
            self.logger.info(
                f"Reconciled failed accounts: {fixed} fixed, {still_failed} still failing"
            )
        return fixed, still_failed

    def expire_overdue(self) -> int:
        """Mark active accounts past their expiry as expired and disable them in Emby."""
        expired = 0
        for account in self.store.list_overdue(utcnow()):
            account.mark_expired()
            self.store.update(account)
            expired += 1
            self.logger.info(f"Account {account.username} expired")
            if self._should_push(account):
                self._push_remote(
                    account,
                    "disable expired",
                    lambda: self.emby.disable_user(account.remote_id),
                )
        return expired
