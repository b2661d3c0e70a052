"""Slash commands available to every member."""

import logging
from typing import Optional

import discord
from discord import app_commands

from embycord.commands.views import command_error_handler, run_command

logger = logging.getLogger(__name__)


def setup_commands(bot):
    """Register the member commands with the bot."""

    @bot.tree.command(name="start", description="Show the welcome message")
    async def start(interaction: discord.Interaction):
        await run_command(interaction, "start", [])

    start.error(command_error_handler("start"))

    @bot.tree.command(name="help", description="List the available commands")
    async def help_command(interaction: discord.Interaction):
        await run_command(interaction, "help", [])

    help_command.error(command_error_handler("help"))

    @bot.tree.command(name="myaccounts", description="List your Emby accounts")
    async def my_accounts(interaction: discord.Interaction):
        await run_command(interaction, "myaccounts", [])

    my_accounts.error(command_error_handler("myaccounts"))

    @bot.tree.command(name="create", description="Create a new Emby account")
    @app_commands.describe(
        username="Username for the new account; leave empty to be asked in a DM"
    )
    async def create(interaction: discord.Interaction, username: Optional[str] = None):
        await run_command(interaction, "create", [username])

    create.error(command_error_handler("create"))

    @bot.tree.command(name="info", description="Show one of your accounts")
    @app_commands.describe(username="The account username")
    async def info(interaction: discord.Interaction, username: str):
        await run_command(interaction, "info", [username])

    info.error(command_error_handler("info"))

    @bot.tree.command(name="renew", description="Extend the expiry of an account")
    @app_commands.describe(
        username="The account username",
        days="Number of days to add (1-3650); leave empty to be asked in a DM",
    )
    async def renew(
        interaction: discord.Interaction,
        username: str,
        days: Optional[app_commands.Range[int, 1, 3650]] = None,
    ):
        await run_command(interaction, "renew", [username, days])

    renew.error(command_error_handler("renew"))

    @bot.tree.command(
        name="changepassword", description="Change the password of an account"
    )
    @app_commands.describe(
        username="The account username",
        password="New password (6-64 characters); leave empty to be asked in a DM",
    )
    async def change_password(
        interaction: discord.Interaction,
        username: str,
        password: Optional[str] = None,
    ):
        await run_command(interaction, "changepassword", [username, password])

    change_password.error(command_error_handler("changepassword"))

    @bot.tree.command(name="quota", description="Show your account quota")
    async def quota(interaction: discord.Interaction):
        await run_command(interaction, "quota", [])

    quota.error(command_error_handler("quota"))

    @bot.tree.command(name="redeem", description="Redeem an invite code")
    @app_commands.describe(code="The invite code; leave empty to be asked in a DM")
    async def redeem(interaction: discord.Interaction, code: Optional[str] = None):
        await run_command(interaction, "redeem", [code])

    redeem.error(command_error_handler("redeem"))

    @bot.tree.command(name="cancel", description="Cancel the current operation")
    async def cancel(interaction: discord.Interaction):
        await run_command(interaction, "cancel", [])

    cancel.error(command_error_handler("cancel"))

    @bot.tree.command(
        name="syncstatus", description="Show the Emby sync state of an account"
    )
    @app_commands.describe(username="The account username")
    async def sync_status(interaction: discord.Interaction, username: str):
        await run_command(interaction, "syncstatus", [username])

    sync_status.error(command_error_handler("syncstatus"))

    logger.info("Member commands registered.")
