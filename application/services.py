from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from application.ledger import LedgerEngine, parse_amount
from domain.errors import LedgerError, StoreError
from domain.models import Transaction


logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "NS"
STATEMENT_SIZE = 5
ADMIN_LOG_PAGE = 10


@dataclass
class ExternalContext:
    """
    Information about the caller from the chat platform.

    The application layer never depends on concrete SDK types; it only sees
    this small context object.
    """

    provider: str
    user_id: str
    username: str


@dataclass
class Notification:
    """A direct message that should be delivered to a particular user."""

    user_id: str
    text: str


@dataclass
class OperationResult:
    """Generic result type for bank operations."""

    success: bool
    message: Optional[str] = None
    error_message: Optional[str] = None
    notifications: List[Notification] = field(default_factory=list)


def format_amount(amount: Decimal, currency: str = DEFAULT_CURRENCY) -> str:
    return f"{amount:,.2f} {currency}"


def _failure(exc: LedgerError) -> OperationResult:
    if isinstance(exc, StoreError):
        logger.error("Ledger store failure: %s", exc)
        return OperationResult(
            success=False,
            error_message="The bank is temporarily unavailable. Please try again later.",
        )
    return OperationResult(success=False, error_message=str(exc))


def _describe_transaction(tx: Transaction, currency: str) -> str:
    return (
        f"**{tx.type.value}**: {format_amount(tx.amount, currency)}, "
        f"From: {tx.from_username or 'N/A'}, To: {tx.to_username or 'N/A'}, "
        f"on {tx.timestamp:%Y-%m-%d %H:%M} UTC"
    )


# Account holder operations


def check_balance(
    ctx: ExternalContext,
    engine: LedgerEngine,
    currency: str = DEFAULT_CURRENCY,
) -> OperationResult:
    try:
        balance = engine.get_balance(ctx.user_id)
    except LedgerError as exc:
        return _failure(exc)
    return OperationResult(success=True, message=f"Your balance is **{format_amount(balance, currency)}**.")


def transfer(
    ctx: ExternalContext,
    recipient_id: str,
    recipient_username: str,
    amount: str,
    engine: LedgerEngine,
    currency: str = DEFAULT_CURRENCY,
) -> OperationResult:
    """
    Send funds to another account holder.

    Both parties are notified directly on success.
    """

    try:
        engine.transfer_funds(ctx.user_id, ctx.username, recipient_id, recipient_username, amount)
    except LedgerError as exc:
        return _failure(exc)

    sent = format_amount(parse_amount(amount), currency)
    return OperationResult(
        success=True,
        message=f"✅ Transfer of **{sent}** to **{recipient_username}** confirmed.",
        notifications=[
            Notification(ctx.user_id, f"You have successfully transferred **{sent}** to **{recipient_username}**."),
            Notification(recipient_id, f"You have received **{sent}** from **{ctx.username}**."),
        ],
    )


def request_deposit(
    ctx: ExternalContext,
    nation_username: str,
    amount: str,
    receipt_url: Optional[str],
    engine: LedgerEngine,
    currency: str = DEFAULT_CURRENCY,
) -> OperationResult:
    if not receipt_url:
        return OperationResult(success=False, error_message="Please attach a screenshot of your payment receipt.")
    if not nation_username:
        return OperationResult(success=False, error_message="Please provide the nation username you paid from.")

    try:
        request = engine.request_deposit(ctx.user_id, ctx.username, nation_username, amount, receipt_url)
    except LedgerError as exc:
        return _failure(exc)
    return OperationResult(
        success=True,
        message=(
            f"Deposit request #{request.id} for **{format_amount(request.amount, currency)}** "
            f"from **{nation_username}** submitted. Pending admin approval."
        ),
    )


def request_withdrawal(
    ctx: ExternalContext,
    nation_name: str,
    amount: str,
    engine: LedgerEngine,
    currency: str = DEFAULT_CURRENCY,
) -> OperationResult:
    if not nation_name:
        return OperationResult(success=False, error_message="Please provide the nation to pay out to.")

    try:
        withdrawal = engine.place_in_escrow(ctx.user_id, nation_name, amount, username=ctx.username)
    except LedgerError as exc:
        return _failure(exc)
    return OperationResult(
        success=True,
        message=(
            f"**{format_amount(withdrawal.amount, currency)}** has been placed into escrow for "
            f"**{nation_name}** (request #{withdrawal.id}). Pending admin approval."
        ),
    )


def mini_statement(
    ctx: ExternalContext,
    engine: LedgerEngine,
    currency: str = DEFAULT_CURRENCY,
) -> OperationResult:
    transactions = engine.get_transactions_by_user(ctx.user_id, STATEMENT_SIZE)
    if not transactions:
        return OperationResult(success=True, message="No transactions found.")
    lines = [f"**Your Last {STATEMENT_SIZE} Transactions:**"]
    lines.extend(_describe_transaction(tx, currency) for tx in transactions)
    return OperationResult(success=True, message="\n".join(lines))


def update_info(
    ctx: ExternalContext,
    engine: LedgerEngine,
    pirate_name: Optional[str] = None,
    real_name: Optional[str] = None,
    ship_name: Optional[str] = None,
    email: Optional[str] = None,
    phone_number: Optional[str] = None,
) -> OperationResult:
    try:
        engine.update_user_info(ctx.user_id, pirate_name, real_name, ship_name, email, phone_number)
    except LedgerError as exc:
        return _failure(exc)
    return OperationResult(success=True, message="Your information has been updated!")


# Administrative operations


def list_pending_deposits(engine: LedgerEngine, currency: str = DEFAULT_CURRENCY) -> OperationResult:
    deposits = engine.get_pending_deposits()
    if not deposits:
        return OperationResult(success=True, message="No pending deposit requests found.")
    lines = ["**Pending deposit requests:**"]
    lines.extend(
        f"#{d.id} | <@{d.user_id}> | {format_amount(d.amount, currency)} | "
        f"Nation: {d.nation_username} | Receipt: {d.receipt_url}"
        for d in deposits
    )
    return OperationResult(success=True, message="\n".join(lines))


def decide_deposit(
    admin_ctx: ExternalContext,
    request_id: int,
    approve: bool,
    engine: LedgerEngine,
    currency: str = DEFAULT_CURRENCY,
) -> OperationResult:
    """Approve or reject a deposit request by id and notify the requester."""

    try:
        request = engine.get_deposit_request(request_id)
        if request is None:
            return OperationResult(success=False, error_message=f"Deposit request #{request_id} not found.")
        if approve:
            request = engine.approve_deposit(
                request.user_id,
                request.amount,
                request.discord_username,
                admin_ctx.user_id,
                admin_ctx.username,
                request_id=request_id,
            )
        else:
            request = engine.reject_deposit(
                request.user_id,
                request.amount,
                admin_ctx.user_id,
                admin_ctx.username,
                request_id=request_id,
            )
    except LedgerError as exc:
        return _failure(exc)

    amount = format_amount(request.amount, currency)
    verb = "approved" if approve else "rejected"
    icon = "✅" if approve else "🚫"
    return OperationResult(
        success=True,
        message=f"{icon} Deposit #{request.id} of **{amount}** for <@{request.user_id}> {verb}.",
        notifications=[Notification(request.user_id, f"Your deposit request of **{amount}** has been {verb}.")],
    )


def list_pending_withdrawals(engine: LedgerEngine, currency: str = DEFAULT_CURRENCY) -> OperationResult:
    withdrawals = engine.get_pending_withdrawals()
    if not withdrawals:
        return OperationResult(success=True, message="No pending withdrawal requests found.")
    lines = ["**Pending withdrawal requests:**"]
    lines.extend(
        f"#{w.id} | <@{w.user_id}> | {format_amount(w.amount, currency)} | Nation: {w.nation_name}"
        for w in withdrawals
    )
    return OperationResult(success=True, message="\n".join(lines))


def decide_withdrawal(
    admin_ctx: ExternalContext,
    withdrawal_id: int,
    approve: bool,
    engine: LedgerEngine,
    currency: str = DEFAULT_CURRENCY,
) -> OperationResult:
    try:
        withdrawal = engine.get_withdrawal(withdrawal_id)
        if withdrawal is None:
            return OperationResult(success=False, error_message=f"Withdrawal request #{withdrawal_id} not found.")
        requested = withdrawal.amount
        if approve:
            engine.approve_withdrawal(
                withdrawal.user_id,
                requested,
                withdrawal_id=withdrawal_id,
                admin_id=admin_ctx.user_id,
                admin_username=admin_ctx.username,
            )
        else:
            engine.reject_withdrawal(
                withdrawal.user_id,
                requested,
                withdrawal_id=withdrawal_id,
                admin_id=admin_ctx.user_id,
                admin_username=admin_ctx.username,
            )
    except LedgerError as exc:
        return _failure(exc)

    amount = format_amount(requested, currency)
    if approve:
        message = f"✅ Approved withdrawal of **{amount}** for <@{withdrawal.user_id}>."
        notice = f"Your withdrawal request of **{amount}** has been approved."
    else:
        released = engine.policy.release_escrow_on_reject
        message = f"🚫 Denied withdrawal of **{amount}** for <@{withdrawal.user_id}>."
        notice = f"Your withdrawal request of **{amount}** has been denied."
        if released:
            notice += " The funds have been returned to your balance."
        else:
            message += " The funds remain in escrow until released."
    return OperationResult(
        success=True,
        message=message,
        notifications=[Notification(withdrawal.user_id, notice)],
    )


def release_escrow(
    admin_ctx: ExternalContext,
    user_id: str,
    amount: str,
    engine: LedgerEngine,
    currency: str = DEFAULT_CURRENCY,
) -> OperationResult:
    try:
        balance = engine.release_escrow(
            user_id,
            amount,
            admin_id=admin_ctx.user_id,
            admin_username=admin_ctx.username,
        )
    except LedgerError as exc:
        return _failure(exc)
    released = format_amount(parse_amount(amount), currency)
    return OperationResult(
        success=True,
        message=f"Released **{released}** to <@{user_id}>. New balance: **{format_amount(balance, currency)}**.",
        notifications=[Notification(user_id, f"**{released}** has been returned from escrow to your balance.")],
    )


def admin_check_balance(
    admin_ctx: ExternalContext,
    target_id: str,
    target_username: str,
    engine: LedgerEngine,
    currency: str = DEFAULT_CURRENCY,
) -> OperationResult:
    try:
        engine.log_admin_action(
            admin_ctx.user_id,
            admin_ctx.username,
            "admin_balance",
            f"Checked balance for user {target_username} ({target_id})",
        )
        balance = engine.get_balance(target_id)
    except LedgerError as exc:
        return _failure(exc)
    return OperationResult(
        success=True,
        message=f"**{target_username}** has **{format_amount(balance, currency)}**.",
    )


def admin_set_balance(
    admin_ctx: ExternalContext,
    target_id: str,
    target_username: str,
    amount: str,
    engine: LedgerEngine,
    currency: str = DEFAULT_CURRENCY,
) -> OperationResult:
    try:
        balance = engine.set_balance(
            target_id,
            target_username,
            amount,
            admin_id=admin_ctx.user_id,
            admin_username=admin_ctx.username,
        )
    except LedgerError as exc:
        return _failure(exc)
    return OperationResult(
        success=True,
        message=(
            f"Balance of **{target_username}** set to **{format_amount(balance, currency)}**. "
            "Manual overrides are not reflected in the approved deposit history."
        ),
    )


def verify_ledger(engine: LedgerEngine, currency: str = DEFAULT_CURRENCY) -> OperationResult:
    """
    Reconcile the ledger for an operator.

    A mismatch is reported as a failed result so the caller can alert.
    """

    try:
        report = engine.reconcile()
    except LedgerError as exc:
        return _failure(exc)

    total = format_amount(report.master_balance, currency)
    if report.balanced:
        return OperationResult(success=True, message=f"✅ Ledger is balanced and correct.\nTotal: **{total}**")

    logger.error("Ledger mismatch reported to operator: %s", report)
    return OperationResult(
        success=False,
        error_message=(
            "🚨 Ledger mismatch detected! Immediate admin action required.\n"
            f"Total: **{total}** | Balances: **{format_amount(report.total_balances, currency)}** | "
            f"In escrow: **{format_amount(report.held_in_escrow, currency)}**"
        ),
    )


def recent_admin_logs(engine: LedgerEngine) -> OperationResult:
    logs = engine.get_admin_logs(ADMIN_LOG_PAGE)
    if not logs:
        return OperationResult(success=True, message="No admin logs found.")
    lines = ["**📜 Latest Admin Actions:**"]
    lines.extend(
        f"**{log.action}** | **{log.admin_username or log.admin_id}** | {log.details} | "
        f"{log.timestamp:%Y-%m-%d %H:%M} UTC"
        for log in logs
    )
    return OperationResult(success=True, message="\n".join(lines))


def lookup_info(
    admin_ctx: ExternalContext,
    target_id: str,
    engine: LedgerEngine,
    currency: str = DEFAULT_CURRENCY,
) -> OperationResult:
    try:
        info = engine.lookup_user_info(target_id)
        engine.log_admin_action(
            admin_ctx.user_id,
            admin_ctx.username,
            "lookup_info",
            f"Looked up info for user {target_id}",
        )
    except LedgerError as exc:
        return _failure(exc)
    if info is None:
        return OperationResult(success=False, error_message="No information found for that user.")
    return OperationResult(
        success=True,
        message="\n".join(
            [
                f"**User info for <@{info.user_id}>**",
                f"Username: {info.username or 'N/A'}",
                f"Balance: {format_amount(info.balance, currency)}",
                f"Nation username: {info.nation_username}",
                f"Pirate name: {info.pirate_name}",
                f"Real name: {info.real_name}",
                f"Ship name: {info.ship_name}",
                f"Email: {info.email}",
                f"Phone number: {info.phone_number}",
            ]
        ),
    )

