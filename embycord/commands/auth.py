"""Authorization checks for slash commands."""

import asyncio
import logging

import discord
from discord import app_commands

from embycord.commands.views import principal_from
from embycord.messaging import get_message

logger = logging.getLogger(__name__)


def is_bot_admin():
    """Allow the command only for configured admin IDs and users with the admin role.

    Blocked users are rejected by the dispatcher itself, so this check only
    deals with the admin gate.
    """

    async def predicate(interaction: discord.Interaction) -> bool:
        command_name = interaction.command.name if interaction.command else "Unknown"
        try:
            logger.debug(
                f"Running admin check for command '{command_name}' by user {interaction.user}"
            )
            dispatcher = interaction.client.dispatcher
            user = await asyncio.to_thread(
                dispatcher.ensure_user, principal_from(interaction.user)
            )
            if dispatcher.is_admin(user):
                return True

            logger.warning(
                f"Admin check failed for user {interaction.user} on command '{command_name}'"
            )
            await interaction.response.send_message(
                get_message("errors.admin_required"), ephemeral=True
            )
            return False
        except Exception as e:
            logger.error(
                f"Error during admin check for user {interaction.user}: {str(e)}",
                exc_info=True,
            )
            if not interaction.response.is_done():
                await interaction.response.send_message(
                    get_message("discord.check_failure"), ephemeral=True
                )
            return False

    return app_commands.check(predicate)
