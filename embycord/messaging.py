"""Handles loading and formatting of user-facing messages and embeds from templates."""

import json
import logging
import os
from typing import Any, Dict, Optional

import discord

from embycord.config import get_config_value
from embycord.errors import EmbycordError

logger = logging.getLogger(__name__)

MESSAGE_TEMPLATES: Dict[str, Any] = {}

# Discord rejects embed descriptions longer than this
EMBED_DESCRIPTION_LIMIT = 4096

STATUS_EMOJI = {
    "active": "✅",
    "suspended": "⏸️",
    "expired": "❌",
    "revoked": "🚫",
    "synced": "✅",
    "pending": "⏳",
    "failed": "⚠️",
}


def load_message_templates() -> None:
    """
    Loads message templates from the JSON file specified in the bot configuration.
    Should be called once at startup.
    """
    global MESSAGE_TEMPLATES
    templates_file_path = get_config_value(
        "message_settings.templates_file", "message_templates.json"
    )

    # The file is looked up relative to the working directory first, then next to the package
    possible_paths = [
        templates_file_path,
        os.path.join(os.path.dirname(__file__), "..", templates_file_path),
    ]

    loaded_path = None
    for path_option in possible_paths:
        abs_path = os.path.abspath(path_option)
        if os.path.exists(abs_path):
            loaded_path = abs_path
            break

    if not loaded_path:
        logger.error(
            f"Message templates file could not be found (tried {possible_paths}). Messaging system will be impaired."
        )
        MESSAGE_TEMPLATES = {}
        return

    try:
        with open(loaded_path, "r", encoding="utf-8") as f:
            MESSAGE_TEMPLATES = json.load(f)
        logger.info(f"Successfully loaded message templates from: {loaded_path}")
    except json.JSONDecodeError as e:
        logger.error(
            f"Error decoding JSON from message templates file {loaded_path}: {e}. Using empty templates."
        )
        MESSAGE_TEMPLATES = {}
    except OSError as e:
        logger.error(
            f"Could not read message templates from {loaded_path}: {e}. Using empty templates.",
            exc_info=True,
        )
        MESSAGE_TEMPLATES = {}


def get_bot_display_name() -> str:
    """Retrieves the bot's display name from configuration."""
    return get_config_value(
        "message_settings.bot_display_name_in_messages",
        get_config_value("bot_settings.bot_name", "Embycord"),
    )


def get_message(key: str, default: Optional[str] = None, **kwargs: Any) -> str:
    """
    Retrieves a message template by its dot-separated key, formats it with kwargs,
    and returns the formatted string.

    Example: get_message("errors.not_authorized")
             get_message("account.renewed", username="alice", days=30, expire_info="...")
    """
    if not MESSAGE_TEMPLATES:
        logger.warning(
            f"Attempted to get message for key '{key}' but templates are not loaded."
        )
        return default if default is not None else f"<Missing Template: {key}>"

    value: Any = MESSAGE_TEMPLATES
    try:
        for k in key.split("."):
            if isinstance(value, dict):
                value = value[k]
            else:
                raise KeyError(k)

        if isinstance(value, list):
            # Multi-line templates are stored as lists of lines
            value = "\n".join(value)
        if not isinstance(value, str):
            logger.warning(
                f"Template value for key '{key}' is not a string: {type(value)}. Returning as is or default."
            )
            return str(value) if default is None else default

        return value.format(**kwargs)
    except KeyError:
        logger.warning(
            f"Message template key '{key}' not found or missing a placeholder. Returning default or placeholder."
        )
        return default if default is not None else f"<Missing Template: {key}>"
    except (IndexError, ValueError) as e:
        logger.error(
            f"Error formatting message for key '{key}' with args {list(kwargs)}: {e}",
            exc_info=True,
        )
        return default if default is not None else f"<Error Formatting Template: {key}>"


def render_error(error: Exception) -> str:
    """
    Turns an exception into the text shown to the user.

    Known errors pick the template named by their ``template_key``; anything
    else gets the generic message so no internals reach the user.
    """
    generic = get_message("errors.generic_command_error")
    if isinstance(error, EmbycordError):
        return get_message(
            f"errors.{error.template_key}", default=generic, **error.template_kwargs()
        )
    return generic


def status_emoji(status: Any) -> str:
    value = getattr(status, "value", status)
    return STATUS_EMOJI.get(str(value), "❓")


def truncate(text: str, limit: int = EMBED_DESCRIPTION_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 2].rstrip() + " …"


def get_embed_color(color_type: str) -> discord.Color:
    """
    Retrieves a hex color string from message_settings.embed_colors based on type (e.g., 'success', 'error'),
    and returns a discord.Color object.
    Falls back to discord.Color.default() if not found or invalid.
    """
    hex_color_str = get_config_value(f"message_settings.embed_colors.{color_type}")

    if isinstance(hex_color_str, str):
        try:
            return discord.Color(int(hex_color_str, 16))
        except ValueError:
            logger.warning(
                f"Invalid hex color format for '{color_type}': '{hex_color_str}'. Using default color."
            )
    else:
        logger.warning(
            f"Embed color type '{color_type}' not found or not a string in config. Using default color."
        )

    return discord.Color.default()


def create_embed(
    title_key: Optional[str] = None,
    description_key: Optional[str] = None,
    color_type: str = "info",
    title_kwargs: Optional[Dict[str, Any]] = None,
    description_kwargs: Optional[Dict[str, Any]] = None,
    footer_key: Optional[str] = None,
    footer_kwargs: Optional[Dict[str, Any]] = None,
    fields: Optional[list] = None,
    description: Optional[str] = None,
    **embed_constructor_kwargs: Any,
) -> discord.Embed:
    """
    Creates a discord.Embed object using message templates for title and description.

    Args:
        title_key: Dot-separated key for the embed title in message_templates.json.
        description_key: Dot-separated key for the embed description.
        color_type: Type of color (e.g., 'success', 'error', 'info', 'warning') to fetch from config.
        title_kwargs: Keyword arguments for formatting the title string.
        description_kwargs: Keyword arguments for formatting the description string.
        footer_key: Dot-separated key for the embed footer text.
        footer_kwargs: Keyword arguments for formatting the footer string if footer_key is used.
        fields: A list of dicts with name_key, value_key, inline, name_kwargs and value_kwargs.
        description: Already rendered description text, used when no description_key is given.
        **embed_constructor_kwargs: Passed directly to the discord.Embed constructor
                                (e.g., timestamp=datetime.datetime.now()).

    Returns:
        A discord.Embed object.
    """
    title = get_message(title_key, **(title_kwargs or {})) if title_key else None
    if description_key:
        description = get_message(description_key, **(description_kwargs or {}))
    if description:
        description = truncate(description)
    color = get_embed_color(color_type)

    valid_embed_kwargs = {
        k: v
        for k, v in embed_constructor_kwargs.items()
        if k not in ["footer", "title", "description"]
    }

    embed = discord.Embed(
        title=title, description=description, color=color, **valid_embed_kwargs
    )

    bot_name = get_bot_display_name()
    if footer_key:
        footer_text = get_message(footer_key, **(footer_kwargs or {}), bot_name=bot_name)
    else:
        footer_text = get_config_value("message_settings.embed_footer_text")
        if footer_text:
            try:
                footer_text = footer_text.format(bot_name=bot_name)
            except (KeyError, IndexError):
                pass

    if footer_text:
        embed.set_footer(text=footer_text)

    if fields:
        for field_data in fields:
            field_name = get_message(
                field_data["name_key"], **(field_data.get("name_kwargs") or {})
            )
            field_value = get_message(
                field_data["value_key"], **(field_data.get("value_kwargs") or {})
            )
            embed.add_field(
                name=field_name, value=field_value, inline=field_data.get("inline", False)
            )

    return embed


# Load templates when this module is imported, after config.py has loaded APP_CONFIG
load_message_templates()
