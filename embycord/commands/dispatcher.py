"""Transport-independent command and button routing.

The Discord layer turns slash commands, button clicks and direct messages into
calls on CommandDispatcher and renders whatever comes back. Everything here is
synchronous; the bot runs it in a worker thread through ``asyncio.to_thread``.

Button clicks carry a short token of the form ``action[:param[:param]]``,
for example ``renew:12:30``.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Union

from embycord.account_service import AccountService
from embycord.emby_client import EmbyClient
from embycord.errors import (
    AccountAlreadyExistsError,
    AdminRequiredError,
    EmbycordError,
    InvalidCodeError,
    InviteCodeNotFoundError,
    UsageError,
    UserBlockedError,
    ValidationError,
)
from embycord.invite_service import InviteService
from embycord.messaging import get_message, render_error, status_emoji
from embycord.models import (
    Account,
    AccountStatus,
    ConversationState,
    InviteCode,
    InviteCodeStatus,
    Principal,
    SyncStatus,
    User,
    UserRole,
)
from embycord.state_machine import StateMachine
from embycord.timeutil import format_datetime, format_duration, format_expire_time
from embycord.user_service import UserService
from embycord.validators import parse_int

PAGE_SIZE = 10
MAX_LISTED_USAGES = 10
MAX_LISTED_EMBY_USERS = 50
RENEW_DAY_OPTIONS = (7, 30, 90, 365)
# Emby parental rating values and their usual labels
RATING_OPTIONS = (
    (3, "TV-Y7"),
    (4, "TV-Y7-FV"),
    (5, "TV-PG"),
    (7, "PG-13"),
    (8, "TV-14"),
    (9, "TV-MA"),
    (10, "NC-17"),
    (15, "AO"),
)
MENTION_PATTERN = re.compile(r"^<@!?(\d+)>$")
CANCEL_WORDS = ("/cancel", "cancel")


class Command(str, Enum):
    START = "start"
    HELP = "help"
    MY_ACCOUNTS = "myaccounts"
    CREATE = "create"
    INFO = "info"
    RENEW = "renew"
    CHANGE_PASSWORD = "changepassword"
    QUOTA = "quota"
    REDEEM = "redeem"
    CANCEL = "cancel"
    SYNC_STATUS = "syncstatus"
    ADMIN = "admin"
    GRANT = "grant"
    USERS = "users"
    ACCOUNTS = "accounts"
    DELETE_ACCOUNT = "deleteaccount"
    SUSPEND = "suspend"
    ACTIVATE = "activate"
    SET_ROLE = "setrole"
    BLOCK_USER = "blockuser"
    UNBLOCK_USER = "unblockuser"
    STATS = "stats"
    PLAYING = "playing"
    CHECK_EMBY = "checkemby"
    SYNC_ACCOUNT = "syncaccount"
    EMBY_USERS = "embyusers"
    SET_DEVICE_LIMIT = "setdevicelimit"
    UPDATE_POLICIES = "updatepolicies"
    GENERATE_CODE = "generatecode"
    LIST_CODES = "listcodes"
    CODE_INFO = "codeinfo"
    REVOKE_CODE = "revokecode"


ADMIN_COMMANDS = frozenset(
    {
        Command.ADMIN,
        Command.GRANT,
        Command.USERS,
        Command.ACCOUNTS,
        Command.DELETE_ACCOUNT,
        Command.SUSPEND,
        Command.ACTIVATE,
        Command.SET_ROLE,
        Command.BLOCK_USER,
        Command.UNBLOCK_USER,
        Command.STATS,
        Command.PLAYING,
        Command.CHECK_EMBY,
        Command.SYNC_ACCOUNT,
        Command.EMBY_USERS,
        Command.SET_DEVICE_LIMIT,
        Command.UPDATE_POLICIES,
        Command.GENERATE_CODE,
        Command.LIST_CODES,
        Command.CODE_INFO,
        Command.REVOKE_CODE,
    }
)


@dataclass
class Button:
    label: str
    token: str
    style: str = "secondary"  # primary, secondary, success or danger


@dataclass
class ActionResponse:
    """Outcome of a command or a button click.

    ``answer`` is the short acknowledgement of a click (shown as an alert when
    ``show_alert`` is set); ``edit_text`` and ``buttons`` replace the message
    the click came from. ``ok`` is False when the request was rejected.
    """

    answer: str = ""
    show_alert: bool = False
    edit_text: Optional[str] = None
    buttons: List[List[Button]] = field(default_factory=list)
    ok: bool = True

    @property
    def text(self) -> str:
        return self.edit_text if self.edit_text is not None else self.answer


Reply = Union[str, ActionResponse]
Handler = Callable[[User, List[str]], Reply]


def _as_response(reply: Reply) -> ActionResponse:
    if isinstance(reply, ActionResponse):
        return reply
    return ActionResponse(edit_text=reply)


def _usage(command: Command) -> UsageError:
    return UsageError(get_message(f"usage.{command.value}", default=f"/{command.value}"))


def _require_args(args: List[str], count: int, command: Command) -> None:
    if len(args) < count:
        raise _usage(command)


def _page_arg(args: List[str]) -> int:
    if not args:
        return 1
    return max(parse_int(args[0], "page"), 1)


def _total_pages(total: int) -> int:
    return max(math.ceil(total / PAGE_SIZE), 1)


def _join(lines: Iterable[str]) -> str:
    return "\n".join(lines)


class CommandDispatcher:
    """Routes commands, button tokens and free text to the services."""

    def __init__(
        self,
        user_service: UserService,
        account_service: AccountService,
        invite_service: InviteService,
        emby_client: EmbyClient,
        state_machine: StateMachine,
        admin_ids: Iterable[str] = (),
    ):
        self.users = user_service
        self.accounts = account_service
        self.invites = invite_service
        self.emby = emby_client
        self.states = state_machine
        self.admin_ids = frozenset(str(admin_id) for admin_id in admin_ids)
        self.logger = logging.getLogger(self.__class__.__name__)

        self._handlers: Dict[Command, Handler] = {
            Command.START: self._start,
            Command.HELP: self._help,
            Command.MY_ACCOUNTS: self._my_accounts,
            Command.CREATE: self._create,
            Command.INFO: self._info,
            Command.RENEW: self._renew,
            Command.CHANGE_PASSWORD: self._change_password,
            Command.QUOTA: self._quota,
            Command.REDEEM: self._redeem,
            Command.CANCEL: self._cancel,
            Command.SYNC_STATUS: self._sync_status,
            Command.ADMIN: self._admin,
            Command.GRANT: self._grant,
            Command.USERS: self._list_users,
            Command.ACCOUNTS: self._list_accounts,
            Command.DELETE_ACCOUNT: self._delete_account,
            Command.SUSPEND: self._suspend,
            Command.ACTIVATE: self._activate,
            Command.SET_ROLE: self._set_role,
            Command.BLOCK_USER: self._block_user,
            Command.UNBLOCK_USER: self._unblock_user,
            Command.STATS: self._stats,
            Command.PLAYING: self._playing,
            Command.CHECK_EMBY: self._check_emby,
            Command.SYNC_ACCOUNT: self._sync_account,
            Command.EMBY_USERS: self._emby_users,
            Command.SET_DEVICE_LIMIT: self._set_device_limit,
            Command.UPDATE_POLICIES: self._update_policies,
            Command.GENERATE_CODE: self._generate_code,
            Command.LIST_CODES: self._list_codes,
            Command.CODE_INFO: self._code_info,
            Command.REVOKE_CODE: self._revoke_code,
        }
        self._actions: Dict[str, Callable[[User, List[str]], ActionResponse]] = {
            "accounts": self._action_accounts,
            "account": self._action_account,
            "pwd": self._action_password,
            "renew": self._action_renew,
            "delete": self._action_delete,
            "confirmdelete": self._action_confirm_delete,
            "rating": self._action_rating,
            "cancel": self._action_cancel,
        }

    # --- Entry points ---

    def is_admin(self, user: User) -> bool:
        return user.external_id in self.admin_ids or user.is_admin()

    def ensure_user(self, principal: Principal) -> User:
        """Resolve (or register) a principal without the access check."""
        return self.users.get_or_create(principal)

    def _resolve(self, principal: Principal) -> User:
        user = self.users.get_or_create(principal)
        if not user.can_access():
            raise UserBlockedError()
        return user

    def dispatch(self, principal: Principal, name: str, args: List[str]) -> ActionResponse:
        """Run a command and return its full response, buttons included."""
        try:
            user = self._resolve(principal)
            try:
                command = Command(name.strip().lstrip("/").lower())
            except ValueError:
                return ActionResponse(
                    edit_text=get_message("general.unknown_command", command=name)
                )
            if command in ADMIN_COMMANDS and not self.is_admin(user):
                raise AdminRequiredError()
            self.logger.debug(f"Command {command.value} from {user.display_name()}")
            return _as_response(self._handlers[command](user, [a for a in args if a]))
        except EmbycordError as e:
            self.logger.info(f"Command {name} by {principal.external_id} rejected: {e}")
            return ActionResponse(edit_text=render_error(e), ok=False)
        except Exception as e:
            self.logger.error(
                f"Unexpected error handling command {name} for {principal.external_id}: {e}",
                exc_info=True,
            )
            return ActionResponse(edit_text=render_error(e), ok=False)

    def handle_command(self, principal: Principal, name: str, args: List[str]) -> str:
        return self.dispatch(principal, name, args).text

    def handle_action(self, principal: Principal, token: str) -> ActionResponse:
        """Handle a button click carrying ``token``."""
        parts = token.split(":")
        try:
            user = self._resolve(principal)
            action = self._actions.get(parts[0])
            if action is None:
                return ActionResponse(
                    answer=get_message("general.unknown_action"), show_alert=True, ok=False
                )
            self.logger.info(f"User {user.display_name()} clicked {token}")
            return action(user, parts[1:])
        except EmbycordError as e:
            self.logger.info(f"Action {token} by {principal.external_id} rejected: {e}")
            return ActionResponse(answer=render_error(e), show_alert=True, ok=False)
        except Exception as e:
            self.logger.error(
                f"Unexpected error handling action {token} for {principal.external_id}: {e}",
                exc_info=True,
            )
            return ActionResponse(answer=render_error(e), show_alert=True, ok=False)

    def handle_text(self, principal: Principal, text: str) -> Optional[str]:
        """Feed free text to the principal's pending flow.

        Returns None when no flow is waiting for input.
        """
        state, payload = self.states.get_state(principal.external_id)
        if state == ConversationState.IDLE:
            return None

        text = text.strip()
        if text.lower() in CANCEL_WORDS:
            self.states.clear_state(principal.external_id)
            return get_message("general.cancelled")

        try:
            user = self._resolve(principal)
            if state == ConversationState.WAITING_USERNAME:
                return self._input_username(user, text)
            if state == ConversationState.WAITING_PASSWORD:
                return self._input_password(user, text, payload)
            if state == ConversationState.WAITING_DAYS:
                return self._input_days(user, text, payload)
            if state == ConversationState.WAITING_INVITE_CODE:
                return self._input_invite_code(user, text)
        except EmbycordError as e:
            self.states.clear_state(principal.external_id)
            self.logger.info(f"Flow {state.value} of {principal.external_id} aborted: {e}")
            return render_error(e)
        except Exception as e:
            self.states.clear_state(principal.external_id)
            self.logger.error(
                f"Unexpected error in flow {state.value} for {principal.external_id}: {e}",
                exc_info=True,
            )
            return render_error(e)

        self.states.clear_state(principal.external_id)
        return get_message("general.session_expired")

    # --- Helpers ---

    def _owned_account(self, user: User, account_id: int) -> Account:
        """The account if ``user`` owns it; admins may act on any account."""
        if self.is_admin(user):
            return self.accounts.get(account_id)
        return self.accounts.check_ownership(account_id, user.id)

    def _owned_account_by_name(self, user: User, username: str) -> Account:
        account = self.accounts.get_by_username(username)
        return self._owned_account(user, account.id)

    def _resolve_user_ref(self, ref: str) -> User:
        """Find a user from a mention, an @username or a Discord user ID."""
        ref = ref.strip()
        mention = MENTION_PATTERN.match(ref)
        if mention:
            return self.users.get_by_external_id(mention.group(1))
        if ref.startswith("@"):
            return self.users.get_by_username(ref)
        if ref.isdigit():
            return self.users.get_by_external_id(ref)
        raise ValidationError("user", "use a mention, @username or Discord user ID")

    def _sync_line(self, account: Account) -> str:
        if account.is_synced():
            return get_message("account.sync_synced", remote_id=account.remote_id)
        if account.sync_status == SyncStatus.FAILED:
            return get_message("account.sync_failed", error=account.sync_error or "-")
        return get_message("account.sync_pending")

    def _account_details(self, account: Account) -> str:
        return get_message(
            "account.info",
            username=account.username,
            status_emoji=status_emoji(account.status),
            status=account.status.value,
            expire_info=format_expire_time(account.expire_at),
            max_devices=account.max_devices,
            created_at=format_datetime(account.created_at),
            sync=self._sync_line(account),
        )

    def _account_buttons(self, user: User, account: Account) -> List[List[Button]]:
        rows = [
            [
                Button(get_message("buttons.renew"), f"renew:{account.id}", "primary"),
                Button(get_message("buttons.change_password"), f"pwd:{account.id}"),
            ],
            [Button(get_message("buttons.parental_rating"), f"rating:{account.id}")],
        ]
        if self.is_admin(user):
            rows.append(
                [Button(get_message("buttons.delete"), f"delete:{account.id}", "danger")]
            )
        rows.append([Button(get_message("buttons.back_to_list"), "accounts")])
        return rows

    def _account_list(self, user: User) -> ActionResponse:
        accounts = self.accounts.list_by_user(user.id)
        if not accounts:
            return ActionResponse(edit_text=get_message("account.list_empty"))
        lines = [get_message("account.list_header", count=len(accounts))]
        rows = []
        for index, account in enumerate(accounts, start=1):
            lines.append(
                get_message(
                    "account.list_item",
                    index=index,
                    username=account.username,
                    status_emoji=status_emoji(account.status),
                    expire_info=format_expire_time(account.expire_at),
                    max_devices=account.max_devices,
                )
            )
            rows.append([Button(f"📝 {account.username}", f"account:{account.id}")])
        lines.append(get_message("account.list_footer"))
        return ActionResponse(edit_text=_join(lines), buttons=rows)

    def _created_text(self, account: Account, password: str) -> str:
        return get_message(
            "account.created",
            username=account.username,
            password=password,
            expire_info=format_expire_time(account.expire_at),
            max_devices=account.max_devices,
            sync=self._sync_line(account),
        )

    def _renewed_text(self, account: Account, days: int) -> str:
        return get_message(
            "account.renewed",
            username=account.username,
            days=days,
            expire_info=format_expire_time(account.expire_at),
        )

    def _sync_status_text(self, account: Account) -> str:
        return get_message(
            "account.sync_status",
            username=account.username,
            sync_emoji=status_emoji(account.sync_status),
            sync_status=account.sync_status.value,
            remote_id=account.remote_id or "-",
            last_sync=format_datetime(account.last_sync_at),
            error=account.sync_error or "-",
        )

    def _code_status(self, code: InviteCode) -> str:
        if code.status == InviteCodeStatus.REVOKED:
            return get_message("invite.status_revoked")
        if code.is_expired():
            return get_message("invite.status_expired")
        if code.is_exhausted():
            return get_message("invite.status_exhausted")
        return get_message("invite.status_active")

    def _code_uses(self, code: InviteCode) -> str:
        max_uses = "∞" if code.is_unlimited() else str(code.max_uses)
        return f"{code.current_uses}/{max_uses}"

    # --- Member commands ---

    def _start(self, user: User, args: List[str]) -> Reply:
        text = get_message("general.welcome", name=user.display_name())
        if self.is_admin(user):
            text += "\n\n" + get_message("general.admin_hint")
        return ActionResponse(
            edit_text=text,
            buttons=[
                [
                    Button(get_message("buttons.my_accounts"), "accounts", "primary"),
                ]
            ],
        )

    def _help(self, user: User, args: List[str]) -> Reply:
        text = get_message("general.help")
        if self.is_admin(user):
            text += "\n\n" + get_message("general.admin_hint")
        return text

    def _my_accounts(self, user: User, args: List[str]) -> Reply:
        return self._account_list(user)

    def _create(self, user: User, args: List[str]) -> Reply:
        if not args:
            self.states.set_state(user.external_id, ConversationState.WAITING_USERNAME)
            return get_message(
                "account.username_prompt",
                example=f"{self.accounts.settings.username_prefix}alice",
            )
        account, password = self.accounts.create(args[0], user.id)
        return self._created_text(account, password)

    def _info(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.INFO)
        account = self._owned_account_by_name(user, args[0])
        return ActionResponse(
            edit_text=self._account_details(account),
            buttons=self._account_buttons(user, account),
        )

    def _renew(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.RENEW)
        account = self._owned_account_by_name(user, args[0])
        if len(args) < 2:
            self.states.set_state(
                user.external_id,
                ConversationState.WAITING_DAYS,
                {"account_id": account.id},
            )
            return get_message(
                "account.days_prompt",
                username=account.username,
                expire_info=format_expire_time(account.expire_at),
            )
        days = parse_int(args[1], "days")
        account = self.accounts.renew(account.id, days)
        return self._renewed_text(account, days)

    def _change_password(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.CHANGE_PASSWORD)
        account = self._owned_account_by_name(user, args[0])
        if len(args) < 2:
            self.states.set_state(
                user.external_id,
                ConversationState.WAITING_PASSWORD,
                {"account_id": account.id},
            )
            return get_message("account.password_prompt", username=account.username)
        account = self.accounts.change_password(account.id, args[1])
        return get_message("account.password_changed", username=account.username)

    def _quota(self, user: User, args: List[str]) -> Reply:
        count = self.accounts.count_by_user(user.id)
        if user.account_quota == 0:
            return get_message("quota.unauthorized", count=count)
        status_key = "quota.status_full" if count >= user.account_quota else "quota.status_ok"
        return get_message(
            "quota.status",
            status=get_message(status_key),
            quota=user.account_quota,
            count=count,
            remaining=max(user.account_quota - count, 0),
        )

    def _redeem(self, user: User, args: List[str]) -> Reply:
        if not args:
            self.states.set_state(user.external_id, ConversationState.WAITING_INVITE_CODE)
            return get_message("invite.code_prompt")
        invite_code = self.invites.activate(args[0], user.id)
        return get_message("invite.redeemed", code=invite_code.code)

    def _cancel(self, user: User, args: List[str]) -> Reply:
        state, _ = self.states.get_state(user.external_id)
        if state == ConversationState.IDLE:
            return get_message("general.nothing_to_cancel")
        self.states.clear_state(user.external_id)
        return get_message("general.cancelled")

    def _sync_status(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.SYNC_STATUS)
        return self._sync_status_text(self._owned_account_by_name(user, args[0]))

    # --- Admin commands ---

    def _admin(self, user: User, args: List[str]) -> Reply:
        return get_message("admin.help")

    def _grant(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.GRANT)
        target = self._resolve_user_ref(args[0])
        quota = parse_int(args[1], "quota") if len(args) > 1 else 1
        if quota < 0:
            raise ValidationError("quota", "must not be negative")

        target = self.users.set_quota(target.id, quota)
        count = self.accounts.count_by_user(target.id)
        name = target.display_name()
        if quota == 0:
            return get_message("admin.grant_revoked", name=name, count=count)
        if count == 0:
            return get_message("admin.grant_new", name=name, quota=quota)
        text = get_message("admin.grant_adjusted", name=name, quota=quota, count=count)
        if count > quota:
            text += "\n" + get_message("admin.grant_over", excess=count - quota)
        elif count < quota:
            text += "\n" + get_message("admin.grant_remaining", remaining=quota - count)
        return text

    def _list_users(self, user: User, args: List[str]) -> Reply:
        page = _page_arg(args)
        total = self.users.count()
        users = self.users.list((page - 1) * PAGE_SIZE, PAGE_SIZE)
        if not users:
            return get_message("admin.users_empty")
        lines = [
            get_message(
                "admin.users_header", page=page, total_pages=_total_pages(total), total=total
            )
        ]
        for listed in users:
            lines.append(
                get_message(
                    "admin.users_item",
                    name=listed.display_name(),
                    external_id=listed.external_id,
                    role=listed.role.value,
                    quota=listed.account_quota,
                    blocked=" 🚫" if listed.is_blocked else "",
                )
            )
        return _join(lines)

    def _list_accounts(self, user: User, args: List[str]) -> Reply:
        page = _page_arg(args)
        total = self.accounts.count()
        rows = self.accounts.list_all_with_user((page - 1) * PAGE_SIZE, PAGE_SIZE)
        if not rows:
            return get_message("admin.accounts_empty")
        lines = [
            get_message(
                "admin.accounts_header",
                page=page,
                total_pages=_total_pages(total),
                total=total,
            )
        ]
        for row in rows:
            lines.append(
                get_message(
                    "admin.accounts_item",
                    username=row.account.username,
                    status_emoji=status_emoji(row.account.status),
                    owner=row.owner_display_name,
                    expire_info=format_expire_time(row.account.expire_at),
                    sync_emoji=status_emoji(row.account.sync_status),
                )
            )
        return _join(lines)

    def _delete_account(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.DELETE_ACCOUNT)
        account = self.accounts.get_by_username(args[0])
        self.accounts.delete(account.id)
        return get_message("account.deleted", username=account.username)

    def _suspend(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.SUSPEND)
        account = self.accounts.get_by_username(args[0])
        account = self.accounts.suspend(account.id)
        return get_message("account.suspended", username=account.username)

    def _activate(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.ACTIVATE)
        account = self.accounts.get_by_username(args[0])
        account = self.accounts.activate(account.id)
        return get_message("account.activated", username=account.username)

    def _set_role(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 2, Command.SET_ROLE)
        target = self._resolve_user_ref(args[0])
        target = self.users.set_role(target.external_id, args[1])
        return get_message("admin.role_set", name=target.display_name(), role=target.role.value)

    def _block_user(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.BLOCK_USER)
        target = self._resolve_user_ref(args[0])
        if target.external_id == user.external_id:
            raise ValidationError("user", "you cannot block yourself")
        target = self.users.block(target.external_id)
        return get_message("admin.blocked", name=target.display_name())

    def _unblock_user(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.UNBLOCK_USER)
        target = self._resolve_user_ref(args[0])
        target = self.users.unblock(target.external_id)
        return get_message("admin.unblocked", name=target.display_name())

    def _stats(self, user: User, args: List[str]) -> Reply:
        total_users = self.users.count()
        total_accounts = self.accounts.count()
        average = total_accounts / total_users if total_users else 0.0
        return get_message(
            "admin.stats",
            total_users=total_users,
            admins=self.users.count_by_role(UserRole.ADMIN),
            members=self.users.count_by_role(UserRole.USER),
            total_accounts=total_accounts,
            active=self.accounts.count_by_status(AccountStatus.ACTIVE),
            suspended=self.accounts.count_by_status(AccountStatus.SUSPENDED),
            expired=self.accounts.count_by_status(AccountStatus.EXPIRED),
            sync_failed=self.accounts.count_by_sync_status(SyncStatus.FAILED),
            average=f"{average:.2f}",
        )

    def _playing(self, user: User, args: List[str]) -> Reply:
        sessions = self.emby.get_sessions()
        if not sessions:
            return get_message("emby.no_sessions")

        playing, paused = [], []
        for session in sessions:
            if session.is_playing():
                item = session.now_playing
                playing.append(
                    get_message(
                        "emby.session_playing",
                        user=session.user_name or "-",
                        device=session.device_name,
                        client=session.client,
                        title=item.display_name,
                        progress=f"{session.progress():.1f}",
                        duration=format_duration(item.duration_seconds),
                    )
                )
            elif session.now_playing is not None:
                paused.append(
                    get_message(
                        "emby.session_paused",
                        user=session.user_name or "-",
                        title=session.now_playing.display_name,
                    )
                )

        lines = [get_message("emby.playing_header")]
        if playing:
            lines.append(get_message("emby.playing_section", count=len(playing)))
            lines.extend(playing)
        if paused:
            lines.append(get_message("emby.paused_section", count=len(paused)))
            lines.extend(paused)
        lines.append(get_message("emby.sessions_total", total=len(sessions)))
        return _join(lines)

    def _check_emby(self, user: User, args: List[str]) -> Reply:
        info = self.emby.ping()
        return get_message(
            "emby.check_ok",
            server_name=info.server_name,
            version=info.version,
            url=self.emby.base_url,
        )

    def _sync_account(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.SYNC_ACCOUNT)
        account = self.accounts.get_by_username(args[0])
        password = args[1] if len(args) > 1 else None
        account = self.accounts.resync(account.id, password)
        return get_message("emby.resync_done") + "\n\n" + self._sync_status_text(account)

    def _emby_users(self, user: User, args: List[str]) -> Reply:
        emby_users = self.emby.list_users()
        if not emby_users:
            return get_message("emby.users_empty")
        lines = [get_message("emby.users_header", total=len(emby_users))]
        for emby_user in emby_users[:MAX_LISTED_EMBY_USERS]:
            flags = []
            if emby_user.is_admin():
                flags.append("👑")
            if emby_user.is_disabled():
                flags.append("⏸️")
            lines.append(
                get_message(
                    "emby.users_item",
                    name=emby_user.name,
                    flags=" ".join(flags),
                    last_login=emby_user.last_login_date or "-",
                )
            )
        if len(emby_users) > MAX_LISTED_EMBY_USERS:
            lines.append(
                get_message(
                    "emby.users_more", count=len(emby_users) - MAX_LISTED_EMBY_USERS
                )
            )
        return _join(lines)

    def _set_device_limit(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 2, Command.SET_DEVICE_LIMIT)
        account = self.accounts.get_by_username(args[0])
        max_devices = parse_int(args[1], "max_devices")
        account = self.accounts.set_device_limit(account.id, max_devices)
        return get_message(
            "account.device_limit_set",
            username=account.username,
            max_devices=account.max_devices,
            sync=self._sync_line(account),
        )

    def _update_policies(self, user: User, args: List[str]) -> Reply:
        updated, failed = self.emby.batch_update_non_admin_policies(
            self.accounts.settings.default_max_devices
        )
        return get_message("emby.policies_updated", updated=updated, failed=failed)

    def _generate_code(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.GENERATE_CODE)
        max_uses = parse_int(args[0], "max_uses")
        expire_days = parse_int(args[1], "expire_days") if len(args) > 1 else 0
        if expire_days < 0:
            raise ValidationError("expire_days", "must not be negative")
        description = " ".join(args[2:]).strip("\"' ")

        invite_code = self.invites.generate(
            max_uses, expire_days, description, user.external_id
        )
        text = get_message(
            "invite.generated",
            code=invite_code.code,
            uses=self._code_uses(invite_code),
            expire=format_datetime(invite_code.expire_at)
            if invite_code.expire_at
            else get_message("invite.never_expires"),
        )
        if description:
            text += "\n" + get_message("invite.description", description=description)
        return text

    def _list_codes(self, user: User, args: List[str]) -> Reply:
        page = _page_arg(args)
        offset = (page - 1) * PAGE_SIZE
        total = self.invites.count()
        codes = self.invites.list(offset, PAGE_SIZE)
        if not codes:
            return get_message("invite.list_empty")
        lines = [
            get_message(
                "invite.list_header", page=page, total_pages=_total_pages(total), total=total
            )
        ]
        for index, invite_code in enumerate(codes, start=offset + 1):
            lines.append(
                get_message(
                    "invite.list_item",
                    index=index,
                    code=invite_code.code,
                    status=self._code_status(invite_code),
                    uses=self._code_uses(invite_code),
                    expire=format_datetime(invite_code.expire_at)
                    if invite_code.expire_at
                    else get_message("invite.never_expires"),
                    description=invite_code.description or "-",
                )
            )
        return _join(lines)

    def _code_info(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.CODE_INFO)
        with_usage = self.invites.get_with_usage(args[0])
        invite_code = with_usage.code
        lines = [
            get_message(
                "invite.info",
                code=invite_code.code,
                status=self._code_status(invite_code),
                uses=self._code_uses(invite_code),
                expire=format_datetime(invite_code.expire_at)
                if invite_code.expire_at
                else get_message("invite.never_expires"),
                created_at=format_datetime(invite_code.created_at),
                created_by=invite_code.created_by or "-",
                description=invite_code.description or "-",
            )
        ]
        if not with_usage.usages:
            lines.append(get_message("invite.usage_none"))
            return _join(lines)
        lines.append(get_message("invite.usage_header"))
        for usage in with_usage.usages[:MAX_LISTED_USAGES]:
            lines.append(
                get_message(
                    "invite.usage_item",
                    user_id=usage.user_id,
                    used_at=format_datetime(usage.used_at),
                )
            )
        if len(with_usage.usages) > MAX_LISTED_USAGES:
            lines.append(
                get_message(
                    "invite.usage_more", count=len(with_usage.usages) - MAX_LISTED_USAGES
                )
            )
        return _join(lines)

    def _revoke_code(self, user: User, args: List[str]) -> Reply:
        _require_args(args, 1, Command.REVOKE_CODE)
        invite_code = self.invites.revoke(args[0])
        return get_message("invite.revoked", code=invite_code.code)

    # --- Button actions ---

    def _action_accounts(self, user: User, params: List[str]) -> ActionResponse:
        return self._account_list(user)

    def _action_account(self, user: User, params: List[str]) -> ActionResponse:
        account = self._owned_account(user, self._account_param(params))
        return ActionResponse(
            edit_text=self._account_details(account),
            buttons=self._account_buttons(user, account),
        )

    def _action_password(self, user: User, params: List[str]) -> ActionResponse:
        account = self._owned_account(user, self._account_param(params))
        self.states.set_state(
            user.external_id,
            ConversationState.WAITING_PASSWORD,
            {"account_id": account.id},
        )
        return ActionResponse(
            edit_text=get_message("account.password_prompt", username=account.username),
            buttons=[[Button(get_message("buttons.cancel"), "cancel")]],
        )

    def _action_renew(self, user: User, params: List[str]) -> ActionResponse:
        account = self._owned_account(user, self._account_param(params))
        if len(params) < 2:
            options = [
                Button(get_message("buttons.days", days=days), f"renew:{account.id}:{days}")
                for days in RENEW_DAY_OPTIONS
            ]
            return ActionResponse(
                edit_text=get_message(
                    "account.renew_options",
                    username=account.username,
                    expire_info=format_expire_time(account.expire_at),
                ),
                buttons=[
                    options[:2],
                    options[2:],
                    [Button(get_message("buttons.back"), f"account:{account.id}")],
                ],
            )
        days = parse_int(params[1], "days")
        account = self.accounts.renew(account.id, days)
        return ActionResponse(
            answer=get_message("account.renewed_short", days=days),
            edit_text=self._renewed_text(account, days),
            buttons=[[Button(get_message("buttons.back"), f"account:{account.id}")]],
        )

    def _action_delete(self, user: User, params: List[str]) -> ActionResponse:
        if not self.is_admin(user):
            raise AdminRequiredError()
        account = self.accounts.get(self._account_param(params))
        return ActionResponse(
            edit_text=get_message("account.delete_confirm", username=account.username),
            buttons=[
                [
                    Button(
                        get_message("buttons.confirm_delete"),
                        f"confirmdelete:{account.id}",
                        "danger",
                    ),
                    Button(get_message("buttons.cancel"), f"account:{account.id}"),
                ]
            ],
        )

    def _action_confirm_delete(self, user: User, params: List[str]) -> ActionResponse:
        if not self.is_admin(user):
            raise AdminRequiredError()
        account = self.accounts.get(self._account_param(params))
        self.accounts.delete(account.id)
        text = get_message("account.deleted", username=account.username)
        return ActionResponse(answer=text, edit_text=text)

    def _action_rating(self, user: User, params: List[str]) -> ActionResponse:
        account = self._owned_account(user, self._account_param(params))
        if len(params) < 2:
            buttons = [
                Button(f"{label}({value})", f"rating:{account.id}:{value}")
                for value, label in RATING_OPTIONS
            ]
            return ActionResponse(
                edit_text=get_message("account.rating_options", username=account.username),
                buttons=[
                    buttons[:3],
                    buttons[3:6],
                    buttons[6:],
                    [Button(get_message("buttons.back"), f"account:{account.id}")],
                ],
            )
        rating = parse_int(params[1], "rating")
        self.accounts.set_parental_rating(account.id, rating)
        return ActionResponse(
            answer=get_message("account.rating_set_short", rating=rating),
            edit_text=get_message(
                "account.rating_set", username=account.username, rating=rating
            ),
            buttons=[[Button(get_message("buttons.back"), f"account:{account.id}")]],
        )

    def _action_cancel(self, user: User, params: List[str]) -> ActionResponse:
        self.states.clear_state(user.external_id)
        text = get_message("general.cancelled")
        return ActionResponse(answer=text, edit_text=text)

    @staticmethod
    def _account_param(params: List[str]) -> int:
        if not params:
            raise ValidationError("account", "missing account id")
        return parse_int(params[0], "account")

    # --- Conversation input ---

    def _input_username(self, user: User, text: str) -> str:
        try:
            account, password = self.accounts.create(text, user.id)
        except (ValidationError, AccountAlreadyExistsError) as e:
            # Keep waiting so the user can try another name
            return render_error(e) + "\n\n" + get_message("general.retry_hint")
        self.states.clear_state(user.external_id)
        return self._created_text(account, password)

    def _input_password(self, user: User, text: str, payload: Dict) -> str:
        account = self._owned_account(user, int(payload["account_id"]))
        try:
            account = self.accounts.change_password(account.id, text)
        except ValidationError as e:
            return render_error(e) + "\n\n" + get_message("general.retry_hint")
        self.states.clear_state(user.external_id)
        return get_message("account.password_changed", username=account.username)

    def _input_days(self, user: User, text: str, payload: Dict) -> str:
        account = self._owned_account(user, int(payload["account_id"]))
        try:
            days = parse_int(text, "days")
            account = self.accounts.renew(account.id, days)
        except ValidationError as e:
            return render_error(e) + "\n\n" + get_message("general.retry_hint")
        self.states.clear_state(user.external_id)
        return self._renewed_text(account, days)

    def _input_invite_code(self, user: User, text: str) -> str:
        try:
            invite_code = self.invites.activate(text, user.id)
        except (InviteCodeNotFoundError, InvalidCodeError) as e:
            return render_error(e) + "\n\n" + get_message("general.retry_hint")
        self.states.clear_state(user.external_id)
        return get_message("invite.redeemed", code=invite_code.code)
