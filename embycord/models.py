"""Data models for the application."""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from embycord.timeutil import utcnow


class AccountStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class InviteCodeStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class ConversationState(str, Enum):
    IDLE = "idle"
    WAITING_USERNAME = "waiting_username"
    WAITING_PASSWORD = "waiting_password"
    WAITING_DAYS = "waiting_days"
    WAITING_INVITE_CODE = "waiting_invite_code"


@dataclass
class Principal:
    """The external identity behind an inbound Discord event."""

    external_id: str
    username: str = ""
    first_name: str = ""
    last_name: str = ""


@dataclass
class Account:
    """A provisioned Emby account owned by exactly one user.

    ``password_hash`` is a bcrypt hash; the plaintext is never stored.
    ``remote_id`` is the Emby user id and stays empty until the first
    successful sync.
    """

    username: str
    password_hash: str
    user_id: int
    status: AccountStatus = AccountStatus.ACTIVE
    expire_at: Optional[datetime.datetime] = None
    max_devices: int = 3
    remote_id: str = ""
    sync_status: SyncStatus = SyncStatus.PENDING
    last_sync_at: Optional[datetime.datetime] = None
    sync_error: str = ""
    id: Optional[int] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    def is_expired(self) -> bool:
        """An account without an expiry date never expires."""
        if self.expire_at is None:
            return False
        return utcnow() > self.expire_at

    def is_valid(self) -> bool:
        return self.is_active() and not self.is_expired()

    def is_synced(self) -> bool:
        return self.sync_status == SyncStatus.SYNCED and bool(self.remote_id)

    def days_until_expire(self) -> int:
        """Days left before expiry, -1 for a permanent account."""
        if self.expire_at is None:
            return -1
        remaining = self.expire_at - utcnow()
        if remaining.total_seconds() <= 0:
            return 0
        return remaining.days

    def activate(self) -> None:
        self.status = AccountStatus.ACTIVE

    def suspend(self) -> None:
        self.status = AccountStatus.SUSPENDED

    def mark_expired(self) -> None:
        self.status = AccountStatus.EXPIRED

    def renew(self, days: int) -> None:
        """Extend the expiry by ``days``.

        A future expiry is extended in place; a past or missing expiry is
        replaced by now + days, so a permanent account becomes time limited.
        Only an expired account is reactivated; suspension is left alone.
        """
        now = utcnow()
        if self.expire_at is not None and self.expire_at > now:
            self.expire_at = self.expire_at + datetime.timedelta(days=days)
        else:
            self.expire_at = now + datetime.timedelta(days=days)
        if self.status == AccountStatus.EXPIRED:
            self.status = AccountStatus.ACTIVE

    def mark_synced(self, remote_id: str) -> None:
        self.remote_id = remote_id
        self.sync_status = SyncStatus.SYNCED
        self.last_sync_at = utcnow()
        self.sync_error = ""

    def mark_sync_failed(self, error: str) -> None:
        # remote_id is kept: a known mirror survives a transient failure
        self.sync_status = SyncStatus.FAILED
        self.last_sync_at = utcnow()
        self.sync_error = error

    def mark_sync_pending(self) -> None:
        self.sync_status = SyncStatus.PENDING


@dataclass
class AccountWithUser:
    """An account joined with its owner's display fields."""

    account: Account
    owner_username: str = ""
    owner_first_name: str = ""
    owner_external_id: str = ""

    @property
    def owner_display_name(self) -> str:
        if self.owner_username:
            return f"@{self.owner_username}"
        return self.owner_first_name or self.owner_external_id


@dataclass
class User:
    """A Discord member known to the bot."""

    external_id: str
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    role: UserRole = UserRole.USER
    is_blocked: bool = False
    account_quota: int = 0
    used_invite_code: bool = False
    id: Optional[int] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None
    deleted_at: Optional[datetime.datetime] = None

    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def can_access(self) -> bool:
        return not self.is_blocked

    def block(self) -> None:
        self.is_blocked = True

    def unblock(self) -> None:
        self.is_blocked = False

    def set_role(self, role: UserRole) -> None:
        self.role = role

    def full_name(self) -> str:
        if self.last_name:
            return f"{self.first_name} {self.last_name}".strip()
        return self.first_name

    def display_name(self) -> str:
        if self.username:
            return f"@{self.username}"
        return self.full_name() or self.external_id


@dataclass
class InviteCode:
    """A redeemable code granting a single account quota."""

    code: str
    max_uses: int = 1
    current_uses: int = 0
    expire_at: Optional[datetime.datetime] = None
    status: InviteCodeStatus = InviteCodeStatus.ACTIVE
    description: str = ""
    created_by: str = ""
    id: Optional[int] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    def is_unlimited(self) -> bool:
        return self.max_uses == -1

    def is_expired(self) -> bool:
        if self.expire_at is None:
            return False
        return utcnow() > self.expire_at

    def is_exhausted(self) -> bool:
        if self.is_unlimited():
            return False
        return self.current_uses >= self.max_uses

    def is_valid(self) -> bool:
        return (
            self.status == InviteCodeStatus.ACTIVE
            and not self.is_expired()
            and not self.is_exhausted()
        )

    def remaining_uses(self) -> int:
        """Uses left, -1 for an unlimited code."""
        if self.is_unlimited():
            return -1
        return max(self.max_uses - self.current_uses, 0)

    def mark_used(self) -> None:
        self.current_uses += 1
        if self.status == InviteCodeStatus.ACTIVE and (
            self.is_expired() or self.is_exhausted()
        ):
            self.status = InviteCodeStatus.EXPIRED

    def revoke(self) -> None:
        self.status = InviteCodeStatus.REVOKED


@dataclass
class InviteCodeUsage:
    invite_code_id: int
    user_id: int
    used_at: datetime.datetime
    id: Optional[int] = None


@dataclass
class InviteCodeWithUsage:
    code: InviteCode
    usages: List[InviteCodeUsage] = field(default_factory=list)


# --- Emby API records ---


@dataclass
class EmbyUser:
    id: str
    name: str
    has_password: bool = False
    has_configured_password: bool = False
    last_login_date: Optional[str] = None
    policy: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "EmbyUser":
        return cls(
            id=data.get("Id", ""),
            name=data.get("Name", ""),
            has_password=bool(data.get("HasPassword", False)),
            has_configured_password=bool(data.get("HasConfiguredPassword", False)),
            last_login_date=data.get("LastLoginDate"),
            policy=data.get("Policy") or {},
        )

    def is_admin(self) -> bool:
        return bool(self.policy.get("IsAdministrator", False))

    def is_disabled(self) -> bool:
        return bool(self.policy.get("IsDisabled", False))


@dataclass
class SystemInfo:
    server_name: str
    version: str
    id: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "SystemInfo":
        return cls(
            server_name=data.get("ServerName", ""),
            version=data.get("Version", ""),
            id=data.get("Id", ""),
        )


@dataclass
class NowPlayingItem:
    id: str
    name: str
    type: str = ""
    run_time_ticks: int = 0
    series_name: str = ""
    index_number: int = 0
    parent_index_number: int = 0

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "NowPlayingItem":
        return cls(
            id=data.get("Id", ""),
            name=data.get("Name", ""),
            type=data.get("Type", ""),
            run_time_ticks=int(data.get("RunTimeTicks") or 0),
            series_name=data.get("SeriesName") or "",
            index_number=int(data.get("IndexNumber") or 0),
            parent_index_number=int(data.get("ParentIndexNumber") or 0),
        )

    @property
    def display_name(self) -> str:
        if self.type == "Episode" and self.series_name:
            if self.parent_index_number > 0 and self.index_number > 0:
                return (
                    f"{self.series_name} "
                    f"S{self.parent_index_number:02d}E{self.index_number:02d}"
                )
            return f"{self.series_name} - {self.name}"
        return self.name

    @property
    def duration_seconds(self) -> int:
        # Emby ticks are 100ns
        return self.run_time_ticks // 10_000_000


@dataclass
class SessionInfo:
    id: str
    user_id: str = ""
    user_name: str = ""
    device_name: str = ""
    client: str = ""
    last_activity_date: Optional[str] = None
    now_playing: Optional[NowPlayingItem] = None
    position_ticks: int = 0
    is_paused: bool = False
    has_play_state: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "SessionInfo":
        play_state = data.get("PlayState")
        now_playing = data.get("NowPlayingItem")
        return cls(
            id=data.get("Id", ""),
            user_id=data.get("UserId", ""),
            user_name=data.get("UserName", ""),
            device_name=data.get("DeviceName", ""),
            client=data.get("Client", ""),
            last_activity_date=data.get("LastActivityDate"),
            now_playing=NowPlayingItem.from_api(now_playing) if now_playing else None,
            position_ticks=int((play_state or {}).get("PositionTicks") or 0),
            is_paused=bool((play_state or {}).get("IsPaused", False)),
            has_play_state=play_state is not None,
        )

    def is_playing(self) -> bool:
        return self.now_playing is not None and self.has_play_state and not self.is_paused

    def progress(self) -> float:
        """Playback position as a percentage of the item's runtime."""
        if self.now_playing is None or not self.has_play_state:
            return 0.0
        if self.now_playing.run_time_ticks == 0:
            return 0.0
        return self.position_ticks / self.now_playing.run_time_ticks * 100


@dataclass
class AdminAction:
    """An administrative command, reported to the admin log channel."""

    admin_id: str
    admin_username: str
    action_type: str
    target: str
    details: Optional[str]
    performed_at: datetime.datetime = field(default_factory=utcnow)
