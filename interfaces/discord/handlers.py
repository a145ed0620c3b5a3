from __future__ import annotations

import asyncio
import functools
import logging
import time
from typing import Dict, Iterable, List, Tuple

import discord
from discord.ext import commands

from application import services
from application.ledger import LedgerEngine
from application.services import ExternalContext, Notification, OperationResult
from infrastructure.config import Settings


logger = logging.getLogger(__name__)

PROFILE_FIELDS = {
    "pirate_name": "pirate_name",
    "real_name": "real_name",
    "ship_name": "ship_name",
    "email": "email",
    "phone": "phone_number",
    "phone_number": "phone_number",
}

# Unanswered transfer confirmations are dropped after this many seconds.
CONFIRMATION_TIMEOUT_SECONDS = 60


def _pop_expired(deadlines: Dict[int, float], now: float) -> List[int]:
    """Remove and return the keys whose deadline has passed."""

    expired = [key for key, deadline in deadlines.items() if deadline <= now]
    for key in expired:
        del deadlines[key]
    return expired


def _build_external_context(user: discord.abc.User) -> ExternalContext:
    """Create an `ExternalContext` from a Discord user."""

    return ExternalContext(
        provider="discord",
        user_id=str(user.id),
        username=user.name,
    )


def create_discord_bot(engine: LedgerEngine, settings: Settings) -> commands.Bot:
    """
    Configure and return the bank teller bot.

    Commands are thin: each one maps a Discord message to an application
    service and sends back the result, plus any direct-message
    notifications the service asks for.
    """

    intents = discord.Intents.default()
    intents.message_content = True
    intents.guilds = True
    intents.members = True
    intents.reactions = True

    # Disable the default help command so we can provide our own `!help`.
    bot = commands.Bot(command_prefix="!", intents=intents, help_command=None)
    currency = settings.currency_label

    # Pending transfer confirmations keyed by the confirmation message ID.
    pending_transfers: Dict[int, Tuple[ExternalContext, str, str, str]] = {}
    # value: (sender_ctx, recipient_id, recipient_name, amount)
    confirmation_deadlines: Dict[int, float] = {}
    transfer_cooldowns: Dict[int, float] = {}

    def prune(now: float) -> None:
        for message_id in _pop_expired(confirmation_deadlines, now):
            pending_transfers.pop(message_id, None)
        _pop_expired(transfer_cooldowns, now)

    async def run_service(func, *args, **kwargs) -> OperationResult:
        # Ledger calls block on the database; keep them off the event loop.
        return await asyncio.to_thread(functools.partial(func, *args, **kwargs))

    async def deliver(notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            try:
                user = await bot.fetch_user(int(notification.user_id))
                await user.send(notification.text)
            except (discord.HTTPException, ValueError) as exc:
                logger.warning("Could not DM user %s: %s", notification.user_id, exc)

    async def reply(ctx: commands.Context, result: OperationResult) -> None:
        if result.success:
            await ctx.send(result.message or "Done.")
        else:
            await ctx.send(result.error_message or "Something went wrong.")
        await deliver(result.notifications)

    def is_admin(ctx: commands.Context) -> bool:
        if settings.admin_role_id is None or not isinstance(ctx.author, discord.Member):
            return False
        return any(role.id == settings.admin_role_id for role in ctx.author.roles)

    admin_only = commands.check(is_admin)

    @bot.event
    async def on_ready():
        logger.info("Discord bot logged in as %s (id=%s)", bot.user, bot.user.id)

    @bot.event
    async def on_command_error(ctx: commands.Context, error: commands.CommandError):
        if isinstance(error, commands.CheckFailure):
            await ctx.send("🚨 You do not have permission to use this command.")
        elif isinstance(error, (commands.MissingRequiredArgument, commands.BadArgument)):
            await ctx.send(f"Invalid arguments. Usage: `!{ctx.command.qualified_name} {ctx.command.signature}`")
        elif isinstance(error, commands.CommandNotFound):
            return
        else:
            logger.error("Command %s failed", ctx.command, exc_info=error)
            await ctx.send("🚨 Something went wrong. Please contact an admin.")

    @bot.command(name="help")
    async def help_cmd(ctx: commands.Context):
        await ctx.send(
            "!balance                          - show your balance\n"
            "!transfer @user <amount>          - send funds to another member\n"
            "!deposit <amount> <nation>        - request a deposit (attach your receipt)\n"
            "!withdraw <amount> <nation>       - request a withdrawal\n"
            "!ministatement                    - your last 5 transactions\n"
            "!updateinfo <field> <value>       - update pirate_name, real_name, ship_name, email or phone\n"
        )

    @bot.command(name="balance")
    async def balance_cmd(ctx: commands.Context):
        result = await run_service(services.check_balance, _build_external_context(ctx.author), engine, currency)
        await reply(ctx, result)

    @bot.command(name="transfer")
    async def transfer_cmd(ctx: commands.Context, recipient: discord.Member, amount: str):
        now = time.monotonic()
        prune(now)
        expires = transfer_cooldowns.get(ctx.author.id, 0.0)
        if now < expires:
            await ctx.send(f"Please wait {int(expires - now) + 1} more second(s) before using !transfer again.")
            return
        transfer_cooldowns[ctx.author.id] = now + settings.transfer_cooldown_seconds

        if recipient.bot or recipient.id == ctx.author.id:
            await ctx.send("Invalid recipient.")
            return

        confirmation_message = await ctx.send(
            f"{ctx.author.mention}, are you sure you want to transfer **{amount} {currency}** "
            f"to **{recipient.name}**?\nReact with ✅ to confirm or ❌ to cancel."
        )
        await confirmation_message.add_reaction("✅")
        await confirmation_message.add_reaction("❌")

        pending_transfers[confirmation_message.id] = (
            _build_external_context(ctx.author),
            str(recipient.id),
            recipient.name,
            amount,
        )
        confirmation_deadlines[confirmation_message.id] = now + CONFIRMATION_TIMEOUT_SECONDS

    @bot.event
    async def on_reaction_add(reaction: discord.Reaction, user: discord.abc.User):
        # Ignore bot reactions and reactions not on tracked messages.
        if user.bot:
            return

        message_id = reaction.message.id
        if message_id not in pending_transfers:
            return

        sender_ctx, recipient_id, recipient_name, amount = pending_transfers[message_id]

        # Only the sender can confirm or cancel.
        if str(user.id) != sender_ctx.user_id:
            return

        channel = reaction.message.channel
        prune(time.monotonic())
        if message_id not in pending_transfers:
            await channel.send("This transfer confirmation has expired. Please run !transfer again.")
            return

        emoji = str(reaction.emoji)
        if emoji == "✅":
            pending_transfers.pop(message_id, None)
            confirmation_deadlines.pop(message_id, None)
            result = await run_service(
                services.transfer, sender_ctx, recipient_id, recipient_name, amount, engine, currency
            )
            if result.success:
                await channel.send(result.message)
            else:
                await channel.send(f"🚨 Transfer failed: {result.error_message}")
            await deliver(result.notifications)
        elif emoji == "❌":
            pending_transfers.pop(message_id, None)
            confirmation_deadlines.pop(message_id, None)
            await channel.send("Transfer cancelled.")

    @bot.command(name="deposit")
    async def deposit_cmd(ctx: commands.Context, amount: str, *, nation_username: str):
        attachments = ctx.message.attachments
        receipt_url = attachments[0].url if attachments else None
        result = await run_service(
            services.request_deposit,
            _build_external_context(ctx.author),
            nation_username.strip(),
            amount,
            receipt_url,
            engine,
            currency,
        )
        await reply(ctx, result)

    @bot.command(name="withdraw")
    async def withdraw_cmd(ctx: commands.Context, amount: str, *, nation_name: str):
        result = await run_service(
            services.request_withdrawal,
            _build_external_context(ctx.author),
            nation_name.strip(),
            amount,
            engine,
            currency,
        )
        await reply(ctx, result)

    @bot.command(name="ministatement")
    async def ministatement_cmd(ctx: commands.Context):
        result = await run_service(services.mini_statement, _build_external_context(ctx.author), engine, currency)
        await reply(ctx, result)

    @bot.command(name="updateinfo")
    async def updateinfo_cmd(ctx: commands.Context, field_name: str, *, value: str):
        field_key = PROFILE_FIELDS.get(field_name.lower())
        if field_key is None:
            await ctx.send("Unknown field. Use one of: pirate_name, real_name, ship_name, email, phone.")
            return
        result = await run_service(
            services.update_info,
            _build_external_context(ctx.author),
            engine,
            **{field_key: value.strip()},
        )
        await reply(ctx, result)

    # Administrative commands

    @bot.command(name="admin-deposits")
    @admin_only
    async def admin_deposits_cmd(ctx: commands.Context):
        await reply(ctx, await run_service(services.list_pending_deposits, engine, currency))

    @bot.command(name="admin-approve-deposit")
    @admin_only
    async def admin_approve_deposit_cmd(ctx: commands.Context, request_id: int):
        result = await run_service(
            services.decide_deposit, _build_external_context(ctx.author), request_id, True, engine, currency
        )
        await reply(ctx, result)

    @bot.command(name="admin-reject-deposit")
    @admin_only
    async def admin_reject_deposit_cmd(ctx: commands.Context, request_id: int):
        result = await run_service(
            services.decide_deposit, _build_external_context(ctx.author), request_id, False, engine, currency
        )
        await reply(ctx, result)

    @bot.command(name="admin-withdrawals")
    @admin_only
    async def admin_withdrawals_cmd(ctx: commands.Context):
        await reply(ctx, await run_service(services.list_pending_withdrawals, engine, currency))

    @bot.command(name="admin-approve-withdrawal")
    @admin_only
    async def admin_approve_withdrawal_cmd(ctx: commands.Context, withdrawal_id: int):
        result = await run_service(
            services.decide_withdrawal, _build_external_context(ctx.author), withdrawal_id, True, engine, currency
        )
        await reply(ctx, result)

    @bot.command(name="admin-reject-withdrawal")
    @admin_only
    async def admin_reject_withdrawal_cmd(ctx: commands.Context, withdrawal_id: int):
        result = await run_service(
            services.decide_withdrawal, _build_external_context(ctx.author), withdrawal_id, False, engine, currency
        )
        await reply(ctx, result)

    @bot.command(name="admin-release")
    @admin_only
    async def admin_release_cmd(ctx: commands.Context, member: discord.Member, amount: str):
        result = await run_service(
            services.release_escrow, _build_external_context(ctx.author), str(member.id), amount, engine, currency
        )
        await reply(ctx, result)

    @bot.command(name="admin-balance")
    @admin_only
    async def admin_balance_cmd(ctx: commands.Context, member: discord.Member):
        result = await run_service(
            services.admin_check_balance,
            _build_external_context(ctx.author),
            str(member.id),
            member.name,
            engine,
            currency,
        )
        await reply(ctx, result)

    @bot.command(name="admin-setbalance")
    @admin_only
    async def admin_setbalance_cmd(ctx: commands.Context, member: discord.Member, amount: str):
        result = await run_service(
            services.admin_set_balance,
            _build_external_context(ctx.author),
            str(member.id),
            member.name,
            amount,
            engine,
            currency,
        )
        await reply(ctx, result)

    @bot.command(name="admin-verifyledger")
    @admin_only
    async def admin_verifyledger_cmd(ctx: commands.Context):
        await reply(ctx, await run_service(services.verify_ledger, engine, currency))

    @bot.command(name="admin-logs")
    @admin_only
    async def admin_logs_cmd(ctx: commands.Context):
        await reply(ctx, await run_service(services.recent_admin_logs, engine))

    @bot.command(name="admin-lookupinfo")
    @admin_only
    async def admin_lookupinfo_cmd(ctx: commands.Context, member: discord.Member):
        result = await run_service(
            services.lookup_info, _build_external_context(ctx.author), str(member.id), engine, currency
        )
        await reply(ctx, result)

    return bot
