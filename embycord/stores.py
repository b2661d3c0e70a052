"""Storage contracts used by the services.

The services only depend on these interfaces; database.py implements them on
top of sqlite3. Implementations must be safe to call from several threads at
once and raise the domain NotFound/AlreadyExists errors from embycord.errors.
"""

import datetime
from abc import ABC, abstractmethod
from typing import List, Optional

from embycord.models import (
    Account,
    AccountStatus,
    AccountWithUser,
    InviteCode,
    InviteCodeUsage,
    SyncStatus,
    User,
    UserRole,
)


class AccountStore(ABC):
    @abstractmethod
    def create(self, account: Account) -> Account:
        """Insert the account and fill in id/created_at/updated_at."""

    @abstractmethod
    def get(self, account_id: int) -> Account: ...

    @abstractmethod
    def get_by_username(self, username: str) -> Account: ...

    @abstractmethod
    def get_with_user(self, account_id: int) -> AccountWithUser: ...

    @abstractmethod
    def update(self, account: Account) -> None: ...

    @abstractmethod
    def delete(self, account_id: int) -> None:
        """Hard delete."""

    @abstractmethod
    def list_by_user(self, user_id: int) -> List[Account]: ...

    @abstractmethod
    def list_all(self, offset: int, limit: int) -> List[Account]: ...

    @abstractmethod
    def list_all_with_user(self, offset: int, limit: int) -> List[AccountWithUser]: ...

    @abstractmethod
    def list_by_sync_status(self, sync_status: SyncStatus, limit: int) -> List[Account]: ...

    @abstractmethod
    def list_overdue(self, now: datetime.datetime) -> List[Account]:
        """Active accounts whose expiry lies before ``now``."""

    @abstractmethod
    def count(self) -> int: ...

    @abstractmethod
    def count_by_user(self, user_id: int) -> int: ...

    @abstractmethod
    def count_by_status(self, status: AccountStatus) -> int: ...

    @abstractmethod
    def count_by_sync_status(self, sync_status: SyncStatus) -> int: ...


class UserStore(ABC):
    @abstractmethod
    def create(self, user: User) -> User:
        """Insert; raises UserAlreadyExistsError when the external id is taken."""

    @abstractmethod
    def get(self, user_id: int) -> User: ...

    @abstractmethod
    def get_by_external_id(self, external_id: str) -> User: ...

    @abstractmethod
    def get_by_username(self, username: str) -> User: ...

    @abstractmethod
    def update(self, user: User) -> None: ...

    @abstractmethod
    def soft_delete(self, user_id: int) -> None: ...

    @abstractmethod
    def list(self, offset: int, limit: int) -> List[User]: ...

    @abstractmethod
    def count(self) -> int: ...

    @abstractmethod
    def count_by_role(self, role: UserRole) -> int: ...


class InviteCodeStore(ABC):
    @abstractmethod
    def create(self, invite_code: InviteCode) -> InviteCode:
        """Insert; raises InviteCodeAlreadyExistsError on a code collision."""

    @abstractmethod
    def get(self, code_id: int) -> InviteCode: ...

    @abstractmethod
    def get_by_code(self, code: str) -> InviteCode: ...

    @abstractmethod
    def update(self, invite_code: InviteCode) -> None: ...

    @abstractmethod
    def list(self, offset: int, limit: int) -> List[InviteCode]: ...

    @abstractmethod
    def count(self) -> int: ...

    @abstractmethod
    def list_usage(self, code_id: int) -> List[InviteCodeUsage]: ...

    @abstractmethod
    def has_user_used_any(self, user_id: int) -> bool: ...

    @abstractmethod
    def record_usage(
        self, code_id: int, user_id: int, used_at: Optional[datetime.datetime] = None
    ) -> InviteCode:
        """Count one redemption and store its usage row in a single transaction.

        Raises AlreadyUsedError if the user already has a usage row and the
        matching invite code error if the code stopped being valid.
        Returns the updated code.
        """
