"""
Discord bot front-end for Emby account provisioning.

This module implements the Discord client that carries the conversations:
slash commands, button clicks and direct messages are handed to the
CommandDispatcher, and background tasks keep the account state tidy.

Key components:
- EmbycordBot class: Main bot implementation inheriting from discord.Client
- register_event_handlers: Sets up event listeners for the bot
- Background tasks: conversation cleanup, Emby sync reconciliation and account expiry
"""

import asyncio
import datetime
import logging
from typing import Any

import discord
from discord import app_commands
from discord.ext import tasks

from embycord.account_service import AccountService
from embycord.commands.dispatcher import ActionResponse, CommandDispatcher
from embycord.commands.views import principal_from, response_embed
from embycord.config import get_config_value
from embycord.messaging import create_embed, get_message
from embycord.models import AdminAction
from embycord.state_machine import StateMachine


class EmbycordBot(discord.Client):
    """
    Discord bot managing Emby accounts.

    This class handles:
    - Discord command registration and processing
    - Direct messages that answer a pending conversation prompt
    - Scheduled tasks (conversation cleanup, sync reconciliation, expiry)
    - Reporting admin actions to the admin log channel

    Attributes:
        dispatcher: Routes commands, buttons and text to the services
        accounts: Account service used by the background tasks
        states: Conversation states, purged periodically
        tree: Command tree for registering slash commands
        admin_log_channel_id: Channel for administrative action logging
    """

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        account_service: AccountService,
        state_machine: StateMachine,
    ):
        self.logger = logging.getLogger(self.__class__.__name__)
        try:
            intents = discord.Intents.default()
            intents.members = True
            intents.message_content = True
            intents.dm_messages = True
            super().__init__(intents=intents)

            self.dispatcher = dispatcher
            self.accounts = account_service
            self.states = state_machine
            self.logger.info("Initializing Command Tree...")
            self.tree = app_commands.CommandTree(self)

            config_admin_log_channel_id = get_config_value("discord.admin_log_channel_id")
            self.admin_log_channel_id = 0  # 0 disables the admin log channel
            if config_admin_log_channel_id:
                try:
                    self.admin_log_channel_id = int(config_admin_log_channel_id)
                except ValueError:
                    self.logger.warning(
                        f"Invalid format for discord.admin_log_channel_id: '{config_admin_log_channel_id}'. Admin logging to Discord channel disabled."
                    )

            if self.admin_log_channel_id == 0:
                self.logger.warning(
                    "ADMIN_LOG_CHANNEL_ID is not set or is 0. Admin actions will not be logged to Discord."
                )
            else:
                self.logger.info(f"Admin log channel ID set to: {self.admin_log_channel_id}")

            self.logger.info("EmbycordBot initialized successfully.")

        except Exception as e:
            init_logger = getattr(self, "logger", logging.getLogger())
            init_logger.critical(f"Failed to initialize EmbycordBot: {str(e)}", exc_info=True)
            raise

    async def setup_hook(self):
        """
        Bot setup hook called when the bot connects to Discord.

        Syncs the slash commands to the configured guild and starts the
        background tasks. Called automatically by discord.py.
        """
        try:
            guild_id_str = get_config_value("discord.guild_id")
            try:
                guild_id_int = int(guild_id_str)
            except (TypeError, ValueError):
                self.logger.error(
                    f"Invalid format for discord.guild_id: '{guild_id_str}'. Command sync will be skipped."
                )
            else:
                self.logger.info(f"Running setup_hook to sync commands for guild ID: {guild_id_int}")
                guild = discord.Object(id=guild_id_int)
                self.tree.copy_global_to(guild=guild)
                await self.tree.sync(guild=guild)
                self.logger.info(f"Successfully synced commands to guild ID: {guild_id_int}")

            self._start_background_tasks()
        except Exception as e:
            self.logger.error(f"Error during setup_hook command sync: {str(e)}", exc_info=True)
            raise

    def _start_background_tasks(self) -> None:
        self.purge_conversations.start()

        reconcile_minutes = get_config_value("sync_settings.reconcile_interval_minutes", 30)
        if reconcile_minutes > 0 and self.accounts.sync_enabled:
            self.reconcile_sync.change_interval(minutes=reconcile_minutes)
            self.reconcile_sync.start()
        else:
            self.logger.info("Sync reconciliation task disabled.")

        expiry_minutes = get_config_value("sync_settings.expiry_check_interval_minutes", 60)
        if expiry_minutes > 0:
            self.expire_accounts.change_interval(minutes=expiry_minutes)
            self.expire_accounts.start()
        else:
            self.logger.info("Account expiry task disabled.")
        self.logger.info("Background tasks started.")

    async def log_admin_action(self, action: AdminAction) -> None:
        """
        Log an administrative action to both the logger and the admin log channel.

        Args:
            action: AdminAction describing who did what to which target
        """
        self.logger.info(
            f"Admin action {action.action_type} by {action.admin_username} ({action.admin_id}) on {action.target}: {action.details or '-'}"
        )
        try:
            await self.wait_until_ready()

            if self.admin_log_channel_id == 0:
                self.logger.debug("Skipping Discord admin log: ADMIN_LOG_CHANNEL_ID is not configured.")
                return

            guild_id_str = get_config_value("discord.guild_id")
            try:
                guild_id = int(guild_id_str)
            except (TypeError, ValueError):
                self.logger.error(
                    f"Cannot log admin action to Discord: GUILD_ID '{guild_id_str}' is not a valid integer."
                )
                return

            guild = self.get_guild(guild_id)
            if not guild:
                self.logger.error(
                    f"Cannot log admin action to Discord: Guild {guild_id} not found in bot's cache."
                )
                return

            channel = guild.get_channel(self.admin_log_channel_id)
            if not channel:
                self.logger.error(
                    f"Cannot log admin action to Discord: Channel {self.admin_log_channel_id} not found in guild {guild.name}."
                )
                return

            embed = create_embed(
                title_key="admin_log.embed_title",
                color_type="info",
                timestamp=action.performed_at.replace(tzinfo=datetime.timezone.utc),
                footer_key="admin_log.footer_text",
                fields=[
                    {
                        "name_key": "admin_log.field_action_type_name",
                        "value_key": "admin_log.field_action_type_value",
                        "value_kwargs": {"action_type": action.action_type},
                        "inline": True,
                    },
                    {
                        "name_key": "admin_log.field_performed_by_name",
                        "value_key": "admin_log.field_performed_by_value",
                        "value_kwargs": {
                            "admin_username": action.admin_username,
                            "admin_id": action.admin_id,
                        },
                        "inline": True,
                    },
                    {
                        "name_key": "admin_log.field_target_name",
                        "value_key": "admin_log.field_target_value",
                        "value_kwargs": {"target": action.target},
                        "inline": True,
                    },
                    {
                        "name_key": "admin_log.field_details_name",
                        "value_key": "admin_log.field_details_value",
                        "value_kwargs": {"details": action.details or "N/A"},
                        "inline": False,
                    },
                ],
            )
            await channel.send(embed=embed)
            self.logger.info(f"Sent admin action log to channel #{channel.name} in guild {guild.name}.")

        except discord.errors.Forbidden:
            self.logger.error(
                f"Failed to send admin action log to channel {self.admin_log_channel_id}: Bot lacks necessary permissions (Forbidden)."
            )
        except discord.errors.HTTPException as e:
            self.logger.error(
                f"Failed to send admin action log to channel {self.admin_log_channel_id} due to an HTTP error: {str(e)}"
            )

    async def handle_direct_message(self, message: discord.Message) -> None:
        """Feed a direct message to the author's pending conversation."""
        reply = await asyncio.to_thread(
            self.dispatcher.handle_text, principal_from(message.author), message.content
        )
        if reply is None:
            await message.channel.send(get_message("general.dm_hint"))
            return
        await message.channel.send(embed=response_embed(ActionResponse(edit_text=reply)))

    # --- Background tasks ---

    @tasks.loop(minutes=5)
    async def purge_conversations(self):
        """Drop conversation states nobody answered in time."""
        purged = self.states.purge_expired()
        if purged:
            self.logger.info(f"Purged {purged} expired conversation state(s).")

    @purge_conversations.before_loop
    async def before_purge_conversations(self):
        await self.wait_until_ready()

    @tasks.loop(minutes=30)
    async def reconcile_sync(self):
        """Retry the Emby sync of accounts whose last sync failed."""
        self.logger.info("Running sync reconciliation task...")
        try:
            fixed, still_failed = await asyncio.to_thread(self.accounts.reconcile_failed)
            self.logger.info(
                f"Sync reconciliation finished: {fixed} fixed, {still_failed} still failing."
            )
        except Exception as e:
            self.logger.error(f"Error during sync reconciliation task: {e}", exc_info=True)

    @reconcile_sync.before_loop
    async def before_reconcile_sync(self):
        await self.wait_until_ready()
        self.logger.info(
            f"reconcile_sync is about to start. Interval: {self.reconcile_sync.minutes} minutes."
        )

    @tasks.loop(minutes=60)
    async def expire_accounts(self):
        """Mark accounts past their expiry date as expired."""
        self.logger.info("Running account expiry task...")
        try:
            expired = await asyncio.to_thread(self.accounts.expire_overdue)
            if expired:
                self.logger.info(f"Expired {expired} account(s).")
        except Exception as e:
            self.logger.error(f"Error during account expiry task: {e}", exc_info=True)

    @expire_accounts.before_loop
    async def before_expire_accounts(self):
        await self.wait_until_ready()
        self.logger.info(
            f"expire_accounts is about to start. Interval: {self.expire_accounts.minutes} minutes."
        )

    async def on_error(self, event_method: str, *args: Any, **kwargs: Any) -> None:
        """Handle errors for the bot."""
        self.logger.exception(f"Unhandled error in {event_method}")


def register_event_handlers(bot: EmbycordBot):
    """
    Register event handlers for the bot instance.

    Args:
        bot: The EmbycordBot instance to register handlers for
    """

    @bot.event
    async def on_ready():
        """Log connection details once the bot is ready."""
        bot.logger.info("------ BOT READY ------")
        bot.logger.info(f"Logged in as: {bot.user} (ID: {bot.user.id})")
        bot.logger.info(f"Connected to {len(bot.guilds)} guild(s).")
        bot.logger.info(f"Discord.py Version: {discord.__version__}")
        bot.logger.info("-----------------------")

    @bot.event
    async def on_message(message: discord.Message):
        """Answer direct messages; guild messages are ignored."""
        if message.author.bot or message.guild is not None:
            return
        try:
            await bot.handle_direct_message(message)
        except discord.HTTPException as e:
            bot.logger.error(
                f"Failed to reply to direct message from {message.author} ({message.author.id}): {e}"
            )
