"""Main entry point for the application."""

import logging
import sys

from embycord.account_service import AccountService, AccountSettings
from embycord.bot import EmbycordBot, register_event_handlers
from embycord.commands.admin_commands import setup_commands as setup_admin_commands
from embycord.commands.dispatcher import CommandDispatcher
from embycord.commands.user_commands import setup_commands as setup_user_commands
from embycord.config import get_config_value, validate_config
from embycord.database import (
    Database,
    SqliteAccountStore,
    SqliteInviteCodeStore,
    SqliteUserStore,
)
from embycord.emby_client import EmbyClient
from embycord.invite_service import InviteService
from embycord.logging_setup import setup_logging
from embycord.state_machine import StateMachine
from embycord.user_service import UserService

# Setup logging first
setup_logging(
    debug_mode=get_config_value("bot_settings.debug_mode", False),
    log_file=get_config_value("bot_settings.log_file_name"),
    log_level=get_config_value("bot_settings.log_level", "INFO"),
)

logger = logging.getLogger(__name__)

validate_config()


def build_account_settings() -> AccountSettings:
    return AccountSettings(
        default_expire_days=get_config_value("account.default_expire_days", 30),
        default_max_devices=get_config_value("account.default_max_devices", 3),
        password_length=get_config_value("account.password_length", 12),
        max_accounts_per_user=get_config_value("account.max_accounts_per_user", 3),
        max_accounts_per_admin=get_config_value("account.max_accounts_per_admin", -1),
        username_prefix=get_config_value("account.username_prefix", ""),
        enable_sync=get_config_value("emby.enable_sync", True),
        sync_on_create=get_config_value("emby.sync_on_create", True),
        sync_on_delete=get_config_value("emby.sync_on_delete", True),
    )


def build_bot() -> EmbycordBot:
    """Wire the stores, services and dispatcher into a ready-to-run bot."""
    logger.info("Initializing Database...")
    db = Database(get_config_value("database.dsn", "data/emby.db"))

    logger.info("Initializing Emby Client...")
    emby_client = EmbyClient(
        server_url=get_config_value("emby.server_url"),
        api_key=get_config_value("emby.api_key"),
        timeout=get_config_value("emby.timeout", 30),
        retry_count=get_config_value("emby.retry_count", 3),
        enabled=get_config_value("emby.enable_sync", True),
    )

    user_service = UserService(SqliteUserStore(db))
    account_service = AccountService(
        SqliteAccountStore(db), user_service, emby_client, build_account_settings()
    )
    invite_service = InviteService(SqliteInviteCodeStore(db), user_service)
    state_machine = StateMachine()

    dispatcher = CommandDispatcher(
        user_service,
        account_service,
        invite_service,
        emby_client,
        state_machine,
        admin_ids=get_config_value("discord.admin_ids", []),
    )

    bot = EmbycordBot(dispatcher, account_service, state_machine)
    register_event_handlers(bot)
    setup_user_commands(bot)
    logger.debug("Member commands setup.")
    setup_admin_commands(bot)
    logger.debug("Admin commands setup.")
    return bot


if __name__ == "__main__":
    try:
        logger.info(f"Starting {get_config_value('bot_settings.bot_name', 'Embycord')}")
        bot = build_bot()
        bot.run(get_config_value("discord.token"), log_handler=None)
    except Exception as e:
        logger.critical(f"Failed to start bot: {e}", exc_info=True)
        sys.exit(1)
