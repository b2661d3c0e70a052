"""Slash commands for bot admins."""

import asyncio
import logging
from typing import Literal, Optional

import discord
from discord import app_commands

from embycord.commands.auth import is_bot_admin
from embycord.commands.views import command_error_handler, principal_from, run_command
from embycord.models import AdminAction

logger = logging.getLogger(__name__)


def _audit(
    interaction: discord.Interaction,
    action_type: str,
    target: str,
    details: Optional[str] = None,
) -> AdminAction:
    return AdminAction(
        admin_id=str(interaction.user.id),
        admin_username=str(interaction.user),
        action_type=action_type,
        target=target,
        details=details,
    )


async def _member_ref(interaction: discord.Interaction, member: discord.abc.User) -> str:
    """Register ``member`` if needed and return the reference the dispatcher resolves."""
    await asyncio.to_thread(
        interaction.client.dispatcher.ensure_user, principal_from(member)
    )
    return str(member.id)


def setup_commands(bot):
    """Register the admin commands with the bot."""

    @bot.tree.command(name="admin", description="List the admin commands (Admin only)")
    @is_bot_admin()
    async def admin(interaction: discord.Interaction):
        await run_command(interaction, "admin", [])

    admin.error(command_error_handler("admin"))

    # --- Users ---

    @bot.tree.command(name="grant", description="Set a member's account quota (Admin only)")
    @app_commands.describe(
        user="The Discord member", quota="Number of accounts allowed (default 1, 0 revokes)"
    )
    @is_bot_admin()
    async def grant(
        interaction: discord.Interaction,
        user: discord.Member,
        quota: Optional[app_commands.Range[int, 0, 1000]] = None,
    ):
        ref = await _member_ref(interaction, user)
        quota = 1 if quota is None else quota
        await run_command(
            interaction,
            "grant",
            [ref, quota],
            audit=_audit(interaction, "grant", f"{user} ({user.id})", f"quota={quota}"),
        )

    grant.error(command_error_handler("grant"))

    @bot.tree.command(name="users", description="List known users (Admin only)")
    @app_commands.describe(page="Page number")
    @is_bot_admin()
    async def users(
        interaction: discord.Interaction,
        page: Optional[app_commands.Range[int, 1]] = None,
    ):
        await run_command(interaction, "users", [page])

    users.error(command_error_handler("users"))

    @bot.tree.command(name="setrole", description="Change a member's role (Admin only)")
    @app_commands.describe(user="The Discord member", role="The new role")
    @is_bot_admin()
    async def set_role(
        interaction: discord.Interaction,
        user: discord.Member,
        role: Literal["user", "admin"],
    ):
        ref = await _member_ref(interaction, user)
        await run_command(
            interaction,
            "setrole",
            [ref, role],
            audit=_audit(interaction, "setrole", f"{user} ({user.id})", f"role={role}"),
        )

    set_role.error(command_error_handler("setrole"))

    @bot.tree.command(name="blockuser", description="Block a member from the bot (Admin only)")
    @app_commands.describe(user="The Discord member")
    @is_bot_admin()
    async def block_user(interaction: discord.Interaction, user: discord.Member):
        ref = await _member_ref(interaction, user)
        await run_command(
            interaction,
            "blockuser",
            [ref],
            audit=_audit(interaction, "blockuser", f"{user} ({user.id})"),
        )

    block_user.error(command_error_handler("blockuser"))

    @bot.tree.command(name="unblockuser", description="Unblock a member (Admin only)")
    @app_commands.describe(user="The Discord member")
    @is_bot_admin()
    async def unblock_user(interaction: discord.Interaction, user: discord.Member):
        ref = await _member_ref(interaction, user)
        await run_command(
            interaction,
            "unblockuser",
            [ref],
            audit=_audit(interaction, "unblockuser", f"{user} ({user.id})"),
        )

    unblock_user.error(command_error_handler("unblockuser"))

    @bot.tree.command(name="stats", description="Show user and account statistics (Admin only)")
    @is_bot_admin()
    async def stats(interaction: discord.Interaction):
        await run_command(interaction, "stats", [])

    stats.error(command_error_handler("stats"))

    # --- Accounts ---

    @bot.tree.command(name="accounts", description="List all accounts (Admin only)")
    @app_commands.describe(page="Page number")
    @is_bot_admin()
    async def accounts(
        interaction: discord.Interaction,
        page: Optional[app_commands.Range[int, 1]] = None,
    ):
        await run_command(interaction, "accounts", [page])

    accounts.error(command_error_handler("accounts"))

    @bot.tree.command(name="deleteaccount", description="Delete an account (Admin only)")
    @app_commands.describe(username="The account username")
    @is_bot_admin()
    async def delete_account(interaction: discord.Interaction, username: str):
        await run_command(
            interaction,
            "deleteaccount",
            [username],
            audit=_audit(interaction, "deleteaccount", username),
        )

    delete_account.error(command_error_handler("deleteaccount"))

    @bot.tree.command(name="suspend", description="Suspend an account (Admin only)")
    @app_commands.describe(username="The account username")
    @is_bot_admin()
    async def suspend(interaction: discord.Interaction, username: str):
        await run_command(
            interaction,
            "suspend",
            [username],
            audit=_audit(interaction, "suspend", username),
        )

    suspend.error(command_error_handler("suspend"))

    @bot.tree.command(name="activate", description="Activate a suspended account (Admin only)")
    @app_commands.describe(username="The account username")
    @is_bot_admin()
    async def activate(interaction: discord.Interaction, username: str):
        await run_command(
            interaction,
            "activate",
            [username],
            audit=_audit(interaction, "activate", username),
        )

    activate.error(command_error_handler("activate"))

    @bot.tree.command(
        name="setdevicelimit", description="Set the device limit of an account (Admin only)"
    )
    @app_commands.describe(username="The account username", count="Max devices (1-100)")
    @is_bot_admin()
    async def set_device_limit(
        interaction: discord.Interaction,
        username: str,
        count: app_commands.Range[int, 1, 100],
    ):
        await run_command(
            interaction,
            "setdevicelimit",
            [username, count],
            audit=_audit(interaction, "setdevicelimit", username, f"max_devices={count}"),
        )

    set_device_limit.error(command_error_handler("setdevicelimit"))

    @bot.tree.command(
        name="syncaccount", description="Retry the Emby sync of an account (Admin only)"
    )
    @app_commands.describe(
        username="The account username",
        password="Password, required when the Emby user has to be created again",
    )
    @is_bot_admin()
    async def sync_account(
        interaction: discord.Interaction,
        username: str,
        password: Optional[str] = None,
    ):
        await run_command(
            interaction,
            "syncaccount",
            [username, password],
            audit=_audit(interaction, "syncaccount", username),
        )

    sync_account.error(command_error_handler("syncaccount"))

    # --- Emby ---

    @bot.tree.command(name="playing", description="Show current Emby sessions (Admin only)")
    @is_bot_admin()
    async def playing(interaction: discord.Interaction):
        await run_command(interaction, "playing", [])

    playing.error(command_error_handler("playing"))

    @bot.tree.command(name="checkemby", description="Test the Emby connection (Admin only)")
    @is_bot_admin()
    async def check_emby(interaction: discord.Interaction):
        await run_command(interaction, "checkemby", [])

    check_emby.error(command_error_handler("checkemby"))

    @bot.tree.command(name="embyusers", description="List the users on Emby (Admin only)")
    @is_bot_admin()
    async def emby_users(interaction: discord.Interaction):
        await run_command(interaction, "embyusers", [])

    emby_users.error(command_error_handler("embyusers"))

    @bot.tree.command(
        name="updatepolicies",
        description="Apply the default policy to every non-admin Emby user (Admin only)",
    )
    @is_bot_admin()
    async def update_policies(interaction: discord.Interaction):
        await run_command(
            interaction,
            "updatepolicies",
            [],
            audit=_audit(interaction, "updatepolicies", "all non-admin Emby users"),
        )

    update_policies.error(command_error_handler("updatepolicies"))

    # --- Invite codes ---

    @bot.tree.command(name="generatecode", description="Create an invite code (Admin only)")
    @app_commands.describe(
        max_uses="Number of uses, -1 for unlimited",
        expire_days="Days until the code expires, 0 for never",
        description="Optional note shown in the code list",
    )
    @is_bot_admin()
    async def generate_code(
        interaction: discord.Interaction,
        max_uses: int,
        expire_days: Optional[app_commands.Range[int, 0]] = None,
        description: Optional[str] = None,
    ):
        args = [max_uses, expire_days if expire_days is not None else 0]
        if description:
            args.extend(description.split())
        await run_command(
            interaction,
            "generatecode",
            args,
            audit=_audit(
                interaction,
                "generatecode",
                "invite code",
                f"max_uses={max_uses}, expire_days={expire_days or 0}",
            ),
        )

    generate_code.error(command_error_handler("generatecode"))

    @bot.tree.command(name="listcodes", description="List invite codes (Admin only)")
    @app_commands.describe(page="Page number")
    @is_bot_admin()
    async def list_codes(
        interaction: discord.Interaction,
        page: Optional[app_commands.Range[int, 1]] = None,
    ):
        await run_command(interaction, "listcodes", [page])

    list_codes.error(command_error_handler("listcodes"))

    @bot.tree.command(name="codeinfo", description="Show an invite code and its usage (Admin only)")
    @app_commands.describe(code="The invite code")
    @is_bot_admin()
    async def code_info(interaction: discord.Interaction, code: str):
        await run_command(interaction, "codeinfo", [code])

    code_info.error(command_error_handler("codeinfo"))

    @bot.tree.command(name="revokecode", description="Revoke an invite code (Admin only)")
    @app_commands.describe(code="The invite code")
    @is_bot_admin()
    async def revoke_code(interaction: discord.Interaction, code: str):
        await run_command(
            interaction,
            "revokecode",
            [code],
            audit=_audit(interaction, "revokecode", code.strip().upper()),
        )

    revoke_code.error(command_error_handler("revokecode"))

    logger.info("Admin commands registered.")
