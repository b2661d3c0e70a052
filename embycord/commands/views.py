"""Discord rendering of dispatcher responses: embeds, button views and the shared command runner."""

import asyncio
import logging
from typing import List, Optional

import discord
from discord import app_commands

from embycord.commands.dispatcher import ActionResponse, Button
from embycord.messaging import create_embed, get_bot_display_name, get_message
from embycord.models import AdminAction, Principal

logger = logging.getLogger(__name__)

VIEW_TIMEOUT_SECONDS = 600

BUTTON_STYLES = {
    "primary": discord.ButtonStyle.primary,
    "secondary": discord.ButtonStyle.secondary,
    "success": discord.ButtonStyle.success,
    "danger": discord.ButtonStyle.danger,
}


def principal_from(user: discord.abc.User) -> Principal:
    """Build the principal for a Discord user or member."""
    return Principal(
        external_id=str(user.id),
        username=user.name,
        first_name=user.display_name,
        last_name="",
    )


def response_embed(response: ActionResponse) -> discord.Embed:
    return create_embed(
        title_key="general.reply_title",
        title_kwargs={"bot_name": get_bot_display_name()},
        description=response.text,
        color_type="info" if response.ok else "error",
    )


class ResponseButton(discord.ui.Button):
    """A button that sends its token back to the dispatcher when clicked."""

    def __init__(self, button: Button, row: int):
        super().__init__(
            label=button.label,
            style=BUTTON_STYLES.get(button.style, discord.ButtonStyle.secondary),
            row=row,
        )
        self.token = button.token

    async def callback(self, interaction: discord.Interaction):
        # Discord requires an answer within 3 seconds
        await interaction.response.defer()
        bot = interaction.client
        response = await asyncio.to_thread(
            bot.dispatcher.handle_action, principal_from(interaction.user), self.token
        )
        await send_action_response(interaction, response)


class ResponseView(discord.ui.View):
    """Buttons of one dispatcher response, usable only by the member it was sent to."""

    def __init__(self, owner_id: int, rows: List[List[Button]]):
        super().__init__(timeout=VIEW_TIMEOUT_SECONDS)
        self.owner_id = owner_id
        # Discord allows at most 5 rows of buttons
        for row_index, row in enumerate(rows[:5]):
            for button in row[:5]:
                self.add_item(ResponseButton(button, row_index))

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != self.owner_id:
            await interaction.response.send_message(
                get_message("discord.check_failure"), ephemeral=True
            )
            return False
        return True

    async def on_error(
        self,
        interaction: discord.Interaction,
        error: Exception,
        item: discord.ui.Item,
    ) -> None:
        logger.error(
            f"Error handling button {getattr(item, 'token', item)} for user {interaction.user}: {error}",
            exc_info=True,
        )
        await _send_error(interaction)


def build_view(owner_id: int, response: ActionResponse) -> Optional[ResponseView]:
    if not response.buttons:
        return None
    return ResponseView(owner_id, response.buttons)


async def send_action_response(
    interaction: discord.Interaction, response: ActionResponse
) -> None:
    """Apply a button response to a deferred click: replace the clicked message and/or acknowledge."""
    if response.edit_text is not None:
        view = build_view(interaction.user.id, response)
        await interaction.edit_original_response(
            embed=response_embed(response), view=view
        )
        if response.show_alert and response.answer:
            await interaction.followup.send(response.answer, ephemeral=True)
        return
    await interaction.followup.send(
        response.answer or get_message("discord.command_error"), ephemeral=True
    )


async def run_command(
    interaction: discord.Interaction,
    name: str,
    args: List[Optional[str]],
    audit: Optional[AdminAction] = None,
) -> ActionResponse:
    """Run a dispatcher command for a slash command and answer ephemerally.

    ``audit`` is reported to the admin log channel when the command succeeds.
    """
    await interaction.response.defer(ephemeral=True)
    bot = interaction.client
    cmd_logger = logger.getChild(name)
    cmd_logger.info(f"/{name} invoked by {interaction.user} (ID: {interaction.user.id})")

    response = await asyncio.to_thread(
        bot.dispatcher.dispatch,
        principal_from(interaction.user),
        name,
        [str(arg) for arg in args if arg is not None and str(arg) != ""],
    )
    view = build_view(interaction.user.id, response)
    if view is not None:
        await interaction.followup.send(
            embed=response_embed(response), view=view, ephemeral=True
        )
    else:
        await interaction.followup.send(embed=response_embed(response), ephemeral=True)

    if audit is not None and response.ok:
        await bot.log_admin_action(audit)
    return response


def command_error_handler(name: str):
    """Build the error handler attached to the ``name`` slash command."""

    async def handler(
        interaction: discord.Interaction, error: app_commands.AppCommandError
    ):
        err_logger = logger.getChild(f"{name}.error")
        err_logger.debug(
            f"Error handler invoked for user {interaction.user} with error type {type(error)}"
        )
        try:
            if isinstance(error, app_commands.errors.CheckFailure):
                err_logger.warning(
                    f"CheckFailure suppressed for user {interaction.user}: {error}"
                )
            elif isinstance(error, app_commands.errors.CommandInvokeError):
                err_logger.error(
                    f"CommandInvokeError in /{name}: {error.original}",
                    exc_info=error.original,
                )
                await _send_error(interaction)
            else:
                err_logger.error(
                    f"Unhandled AppCommandError in /{name}: {type(error).__name__} - {str(error)}",
                    exc_info=True,
                )
                await _send_error(interaction)
        except discord.HTTPException as e:
            err_logger.critical(
                f"CRITICAL: Error within /{name} error handler: {str(e)}",
                exc_info=True,
            )

    return handler


async def _send_error(interaction: discord.Interaction) -> None:
    if interaction.response.is_done():
        await interaction.followup.send(get_message("discord.command_error"), ephemeral=True)
    else:
        await interaction.response.send_message(
            get_message("discord.command_error"), ephemeral=True
        )
