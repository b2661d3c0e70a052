"""Database operations for the application."""

import datetime
import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Generator, List, Optional

from embycord.errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    AlreadyUsedError,
    InviteCodeAlreadyExistsError,
    InviteCodeNotFoundError,
    UserAlreadyExistsError,
    UserNotFoundError,
    invite_code_state_error,
)
from embycord.models import (
    Account,
    AccountStatus,
    AccountWithUser,
    InviteCode,
    InviteCodeStatus,
    InviteCodeUsage,
    SyncStatus,
    User,
    UserRole,
)
from embycord.stores import AccountStore, InviteCodeStore, UserStore
from embycord.timeutil import utcnow

# Database schema
CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL UNIQUE,       -- Discord user ID
    username TEXT NOT NULL DEFAULT '',
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    role TEXT NOT NULL DEFAULT 'user',
    is_blocked BOOLEAN NOT NULL DEFAULT FALSE,
    account_quota INTEGER NOT NULL DEFAULT 0 CHECK (account_quota >= 0),
    used_invite_code BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT NULL                    -- Soft delete
);

CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE COLLATE NOCASE,
    password_hash TEXT NOT NULL,
    user_id INTEGER NOT NULL REFERENCES users(id),
    status TEXT NOT NULL DEFAULT 'active',
    expire_at TEXT NULL,                    -- NULL means never expires
    max_devices INTEGER NOT NULL DEFAULT 3,
    remote_id TEXT NOT NULL DEFAULT '',     -- Emby user ID once synced
    sync_status TEXT NOT NULL DEFAULT 'pending',
    last_sync_at TEXT NULL,
    sync_error TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_accounts_user_id ON accounts(user_id);
CREATE INDEX IF NOT EXISTS idx_accounts_status ON accounts(status);
CREATE INDEX IF NOT EXISTS idx_accounts_sync_status ON accounts(sync_status);

CREATE TABLE IF NOT EXISTS invite_codes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    code TEXT NOT NULL UNIQUE,
    max_uses INTEGER NOT NULL DEFAULT 1,    -- -1 means unlimited
    current_uses INTEGER NOT NULL DEFAULT 0,
    expire_at TEXT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    description TEXT NOT NULL DEFAULT '',
    created_by TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS invite_code_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    invite_code_id INTEGER NOT NULL REFERENCES invite_codes(id),
    user_id INTEGER NOT NULL UNIQUE REFERENCES users(id),  -- One redemption per user, ever
    used_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_invite_code_usage_code ON invite_code_usage(invite_code_id);
"""


def _to_db(value: Optional[datetime.datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(sep=" ", timespec="microseconds")


def _from_db(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    return datetime.datetime.fromisoformat(value)


class Database:
    """Handles database operations with proper connection management and error handling"""

    def __init__(self, db_file_path: str):
        self.db_file = db_file_path
        self.logger = logging.getLogger(self.__class__.__name__)
        db_dir = os.path.dirname(self.db_file)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
            self.logger.info(f"Created database directory: {db_dir}")
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database with required tables"""
        try:
            with self._get_connection() as conn:
                conn.executescript(CREATE_TABLE_SQL)
                conn.commit()
                self.logger.info(f"Database initialized successfully: {self.db_file}")
        except Exception as e:
            self.logger.critical(
                f"Failed to initialize database {self.db_file}: {str(e)}"
            )
            raise

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections with proper error handling"""
        conn = None
        try:
            conn = sqlite3.connect(self.db_file, timeout=10)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.Error as e:
            self.logger.error(f"Database error ({self.db_file}): {str(e)}")
            raise
        finally:
            if conn:
                conn.close()

    def connection(self):
        return self._get_connection()


# --- Accounts ---

ACCOUNT_WITH_USER_SELECT = """
    SELECT a.*, u.username AS owner_username, u.first_name AS owner_first_name,
           u.external_id AS owner_external_id
    FROM accounts a
    LEFT JOIN users u ON u.id = a.user_id
"""


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        username=row["username"],
        password_hash=row["password_hash"],
        user_id=row["user_id"],
        status=AccountStatus(row["status"]),
        expire_at=_from_db(row["expire_at"]),
        max_devices=row["max_devices"],
        remote_id=row["remote_id"],
        sync_status=SyncStatus(row["sync_status"]),
        last_sync_at=_from_db(row["last_sync_at"]),
        sync_error=row["sync_error"],
        created_at=_from_db(row["created_at"]),
        updated_at=_from_db(row["updated_at"]),
    )


def _row_to_account_with_user(row: sqlite3.Row) -> AccountWithUser:
    return AccountWithUser(
        account=_row_to_account(row),
        owner_username=row["owner_username"] or "",
        owner_first_name=row["owner_first_name"] or "",
        owner_external_id=row["owner_external_id"] or "",
    )


class SqliteAccountStore(AccountStore):
    """Account persistence on top of the sqlite Database"""

    def __init__(self, db: Database):
        self.db = db
        self.logger = logging.getLogger(self.__class__.__name__)

    def create(self, account: Account) -> Account:
        now = utcnow()
        account.created_at = now
        account.updated_at = now
        try:
            with self.db.connection() as conn:
                with conn:  # Use transaction
                    cursor = conn.execute(
                        """
                        INSERT INTO accounts (
                            username, password_hash, user_id, status, expire_at,
                            max_devices, remote_id, sync_status, last_sync_at, sync_error,
                            created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            account.username,
                            account.password_hash,
                            account.user_id,
                            account.status.value,
                            _to_db(account.expire_at),
                            account.max_devices,
                            account.remote_id,
                            account.sync_status.value,
                            _to_db(account.last_sync_at),
                            account.sync_error,
                            _to_db(now),
                            _to_db(now),
                        ),
                    )
                    account.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            if "accounts.username" in str(e):
                raise AccountAlreadyExistsError(account.username) from e
            raise
        self.logger.info(f"Created account {account.username} (ID: {account.id})")
        return account

    def _fetch_one(self, query: str, params: tuple, ref: Any) -> Account:
        with self.db.connection() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            raise AccountNotFoundError(ref)
        return _row_to_account(row)

    def get(self, account_id: int) -> Account:
        return self._fetch_one(
            "SELECT * FROM accounts WHERE id = ?", (account_id,), account_id
        )

    def get_by_username(self, username: str) -> Account:
        return self._fetch_one(
            "SELECT * FROM accounts WHERE username = ?", (username,), username
        )

    def get_with_user(self, account_id: int) -> AccountWithUser:
        with self.db.connection() as conn:
            row = conn.execute(
                ACCOUNT_WITH_USER_SELECT + " WHERE a.id = ?", (account_id,)
            ).fetchone()
        if row is None:
            raise AccountNotFoundError(account_id)
        return _row_to_account_with_user(row)

    def update(self, account: Account) -> None:
        account.updated_at = utcnow()
        with self.db.connection() as conn:
            with conn:  # Use transaction
                cursor = conn.execute(
                    """
                    UPDATE accounts SET
                        password_hash = ?, status = ?, expire_at = ?,
                        max_devices = ?, remote_id = ?, sync_status = ?,
                        last_sync_at = ?, sync_error = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        account.password_hash,
                        account.status.value,
                        _to_db(account.expire_at),
                        account.max_devices,
                        account.remote_id,
                        account.sync_status.value,
                        _to_db(account.last_sync_at),
                        account.sync_error,
                        _to_db(account.updated_at),
                        account.id,
                    ),
                )
        if cursor.rowcount == 0:
            raise AccountNotFoundError(account.id)
        self.logger.debug(
            f"Updated account {account.username} (ID: {account.id}), status={account.status.value}, sync={account.sync_status.value}"
        )

    def delete(self, account_id: int) -> None:
        with self.db.connection() as conn:
            with conn:  # Use transaction
                cursor = conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
        if cursor.rowcount == 0:
            raise AccountNotFoundError(account_id)
        self.logger.info(f"Deleted account record ID {account_id}")

    def _fetch_all(self, query: str, params: tuple = ()) -> List[Account]:
        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_account(row) for row in rows]

    def list_by_user(self, user_id: int) -> List[Account]:
        return self._fetch_all(
            "SELECT * FROM accounts WHERE user_id = ? ORDER BY id", (user_id,)
        )

    def list_all(self, offset: int, limit: int) -> List[Account]:
        return self._fetch_all(
            "SELECT * FROM accounts ORDER BY id DESC LIMIT ? OFFSET ?", (limit, offset)
        )

    def list_all_with_user(self, offset: int, limit: int) -> List[AccountWithUser]:
        with self.db.connection() as conn:
            rows = conn.execute(
                ACCOUNT_WITH_USER_SELECT + " ORDER BY a.id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [_row_to_account_with_user(row) for row in rows]

    def list_by_sync_status(self, sync_status: SyncStatus, limit: int) -> List[Account]:
        return self._fetch_all(
            "SELECT * FROM accounts WHERE sync_status = ? ORDER BY updated_at LIMIT ?",
            (sync_status.value, limit),
        )

    def list_overdue(self, now: datetime.datetime) -> List[Account]:
        return self._fetch_all(
            "SELECT * FROM accounts WHERE status = ? AND expire_at IS NOT NULL AND expire_at < ?",
            (AccountStatus.ACTIVE.value, _to_db(now)),
        )

    def _count(self, query: str, params: tuple = ()) -> int:
        with self.db.connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    def count(self) -> int:
        return self._count("SELECT COUNT(*) FROM accounts")

    def count_by_user(self, user_id: int) -> int:
        return self._count("SELECT COUNT(*) FROM accounts WHERE user_id = ?", (user_id,))

    def count_by_status(self, status: AccountStatus) -> int:
        return self._count(
            "SELECT COUNT(*) FROM accounts WHERE status = ?", (status.value,)
        )

    def count_by_sync_status(self, sync_status: SyncStatus) -> int:
        return self._count(
            "SELECT COUNT(*) FROM accounts WHERE sync_status = ?", (sync_status.value,)
        )


# --- Users ---


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        external_id=row["external_id"],
        username=row["username"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        role=UserRole(row["role"]),
        is_blocked=bool(row["is_blocked"]),
        account_quota=row["account_quota"],
        used_invite_code=bool(row["used_invite_code"]),
        created_at=_from_db(row["created_at"]),
        updated_at=_from_db(row["updated_at"]),
        deleted_at=_from_db(row["deleted_at"]),
    )


class SqliteUserStore(UserStore):
    """User persistence; soft-deleted rows are hidden from every read"""

    def __init__(self, db: Database):
        self.db = db
        self.logger = logging.getLogger(self.__class__.__name__)

    def create(self, user: User) -> User:
        now = utcnow()
        with self.db.connection() as conn:
            with conn:  # Use transaction
                # A soft-deleted user coming back is revived instead of duplicated
                cursor = conn.execute(
                    """
                    INSERT INTO users (
                        external_id, username, first_name, last_name, role, is_blocked,
                        account_quota, used_invite_code, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(external_id) DO UPDATE SET
                        username = excluded.username,
                        first_name = excluded.first_name,
                        last_name = excluded.last_name,
                        updated_at = excluded.updated_at,
                        deleted_at = NULL
                    WHERE users.deleted_at IS NOT NULL
                    """,
                    (
                        user.external_id,
                        user.username,
                        user.first_name,
                        user.last_name,
                        user.role.value,
                        user.is_blocked,
                        max(user.account_quota, 0),
                        user.used_invite_code,
                        _to_db(now),
                        _to_db(now),
                    ),
                )
                if cursor.rowcount == 0:
                    raise UserAlreadyExistsError(user.external_id)
        created = self.get_by_external_id(user.external_id)
        self.logger.info(
            f"Created user {created.display_name()} (external ID: {created.external_id}, ID: {created.id})"
        )
        return created

    def _fetch_one(self, query: str, params: tuple, ref: Any) -> User:
        with self.db.connection() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            raise UserNotFoundError(ref)
        return _row_to_user(row)

    def get(self, user_id: int) -> User:
        return self._fetch_one(
            "SELECT * FROM users WHERE id = ? AND deleted_at IS NULL", (user_id,), user_id
        )

    def get_by_external_id(self, external_id: str) -> User:
        return self._fetch_one(
            "SELECT * FROM users WHERE external_id = ? AND deleted_at IS NULL",
            (external_id,),
            external_id,
        )

    def get_by_username(self, username: str) -> User:
        return self._fetch_one(
            "SELECT * FROM users WHERE username = ? COLLATE NOCASE AND deleted_at IS NULL",
            (username.lstrip("@"),),
            username,
        )

    def update(self, user: User) -> None:
        user.updated_at = utcnow()
        with self.db.connection() as conn:
            with conn:  # Use transaction
                cursor = conn.execute(
                    """
                    UPDATE users SET
                        username = ?, first_name = ?, last_name = ?, role = ?,
                        is_blocked = ?, account_quota = ?, used_invite_code = ?,
                        updated_at = ?
                    WHERE id = ? AND deleted_at IS NULL
                    """,
                    (
                        user.username,
                        user.first_name,
                        user.last_name,
                        user.role.value,
                        user.is_blocked,
                        max(user.account_quota, 0),
                        user.used_invite_code,
                        _to_db(user.updated_at),
                        user.id,
                    ),
                )
        if cursor.rowcount == 0:
            raise UserNotFoundError(user.id)

    def soft_delete(self, user_id: int) -> None:
        with self.db.connection() as conn:
            with conn:  # Use transaction
                cursor = conn.execute(
                    "UPDATE users SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                    (_to_db(utcnow()), user_id),
                )
        if cursor.rowcount == 0:
            raise UserNotFoundError(user_id)
        self.logger.info(f"Soft-deleted user ID {user_id}")

    def list(self, offset: int, limit: int) -> List[User]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE deleted_at IS NULL ORDER BY id LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    def count(self) -> int:
        with self.db.connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM users WHERE deleted_at IS NULL"
            ).fetchone()[0]

    def count_by_role(self, role: UserRole) -> int:
        with self.db.connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM users WHERE role = ? AND deleted_at IS NULL",
                (role.value,),
            ).fetchone()[0]


# --- Invite codes ---


def _row_to_invite_code(row: sqlite3.Row) -> InviteCode:
    return InviteCode(
        id=row["id"],
        code=row["code"],
        max_uses=row["max_uses"],
        current_uses=row["current_uses"],
        expire_at=_from_db(row["expire_at"]),
        status=InviteCodeStatus(row["status"]),
        description=row["description"],
        created_by=row["created_by"],
        created_at=_from_db(row["created_at"]),
        updated_at=_from_db(row["updated_at"]),
    )


class SqliteInviteCodeStore(InviteCodeStore):
    """Invite code and redemption persistence"""

    def __init__(self, db: Database):
        self.db = db
        self.logger = logging.getLogger(self.__class__.__name__)

    def create(self, invite_code: InviteCode) -> InviteCode:
        now = utcnow()
        invite_code.created_at = now
        invite_code.updated_at = now
        try:
            with self.db.connection() as conn:
                with conn:  # Use transaction
                    cursor = conn.execute(
                        """
                        INSERT INTO invite_codes (
                            code, max_uses, current_uses, expire_at, status,
                            description, created_by, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            invite_code.code,
                            invite_code.max_uses,
                            invite_code.current_uses,
                            _to_db(invite_code.expire_at),
                            invite_code.status.value,
                            invite_code.description,
                            invite_code.created_by,
                            _to_db(now),
                            _to_db(now),
                        ),
                    )
                    invite_code.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise InviteCodeAlreadyExistsError(invite_code.code) from e
        return invite_code

    def get(self, code_id: int) -> InviteCode:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM invite_codes WHERE id = ?", (code_id,)
            ).fetchone()
        if row is None:
            raise InviteCodeNotFoundError(str(code_id))
        return _row_to_invite_code(row)

    def get_by_code(self, code: str) -> InviteCode:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM invite_codes WHERE code = ?", (code,)
            ).fetchone()
        if row is None:
            raise InviteCodeNotFoundError(code)
        return _row_to_invite_code(row)

    def update(self, invite_code: InviteCode) -> None:
        invite_code.updated_at = utcnow()
        with self.db.connection() as conn:
            with conn:  # Use transaction
                cursor = conn.execute(
                    """
                    UPDATE invite_codes SET
                        max_uses = ?, current_uses = ?, expire_at = ?, status = ?,
                        description = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        invite_code.max_uses,
                        invite_code.current_uses,
                        _to_db(invite_code.expire_at),
                        invite_code.status.value,
                        invite_code.description,
                        _to_db(invite_code.updated_at),
                        invite_code.id,
                    ),
                )
        if cursor.rowcount == 0:
            raise InviteCodeNotFoundError(invite_code.code)

    def list(self, offset: int, limit: int) -> List[InviteCode]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM invite_codes ORDER BY id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [_row_to_invite_code(row) for row in rows]

    def count(self) -> int:
        with self.db.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM invite_codes").fetchone()[0]

    def list_usage(self, code_id: int) -> List[InviteCodeUsage]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM invite_code_usage WHERE invite_code_id = ? ORDER BY used_at",
                (code_id,),
            ).fetchall()
        return [
            InviteCodeUsage(
                id=row["id"],
                invite_code_id=row["invite_code_id"],
                user_id=row["user_id"],
                used_at=_from_db(row["used_at"]),
            )
            for row in rows
        ]

    def has_user_used_any(self, user_id: int) -> bool:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM invite_code_usage WHERE user_id = ? LIMIT 1", (user_id,)
            ).fetchone()
        return row is not None

    def record_usage(
        self, code_id: int, user_id: int, used_at: Optional[datetime.datetime] = None
    ) -> InviteCode:
        used_at = used_at or utcnow()
        with self.db.connection() as conn:
            with conn:  # One transaction for the counter and the usage row
                cursor = conn.execute(
                    """
                    UPDATE invite_codes SET
                        current_uses = current_uses + 1,
                        status = CASE
                            WHEN max_uses != -1 AND current_uses + 1 >= max_uses THEN 'expired'
                            ELSE status
                        END,
                        updated_at = ?
                    WHERE id = ?
                      AND status = 'active'
                      AND (max_uses = -1 OR current_uses < max_uses)
                      AND (expire_at IS NULL OR expire_at > ?)
                    """,
                    (_to_db(used_at), code_id, _to_db(used_at)),
                )
                if cursor.rowcount == 0:
                    row = conn.execute(
                        "SELECT * FROM invite_codes WHERE id = ?", (code_id,)
                    ).fetchone()
                    if row is None:
                        raise InviteCodeNotFoundError(str(code_id))
                    raise invite_code_state_error(_row_to_invite_code(row))
                try:
                    conn.execute(
                        "INSERT INTO invite_code_usage (invite_code_id, user_id, used_at) VALUES (?, ?, ?)",
                        (code_id, user_id, _to_db(used_at)),
                    )
                except sqlite3.IntegrityError:
                    # Leaving the block with an exception rolls back the counter too
                    raise AlreadyUsedError() from None
                row = conn.execute(
                    "SELECT * FROM invite_codes WHERE id = ?", (code_id,)
                ).fetchone()
        self.logger.info(f"Recorded redemption of invite code ID {code_id} by user ID {user_id}")
        return _row_to_invite_code(row)
