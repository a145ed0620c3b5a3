from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from domain.errors import (
    InsufficientFunds,
    InvalidAmount,
    InvalidLimit,
    InvalidTransfer,
    LedgerMismatch,
    NoMatchingRequest,
    StoreError,
)
from domain.models import (
    ADMIN,
    CENT,
    MAX_AMOUNT,
    NOT_SET,
    SYSTEM,
    ZERO,
    AdminLog,
    DepositRequest,
    LedgerPolicy,
    LedgerReport,
    RequestStatus,
    Transaction,
    TransactionType,
    UserInfo,
    WithdrawalRequest,
)
from domain.repositories import LedgerSession, LedgerStore


logger = logging.getLogger(__name__)


def parse_amount(value: Any) -> Decimal:
    """
    Convert `value` into a two-decimal `Decimal`.

    Accepts `Decimal`, `int` and numeric strings. Binary floats are
    refused outright, as are values with sub-cent precision and values
    larger than `MAX_AMOUNT`.
    """

    if isinstance(value, (bool, float)) or value is None:
        raise InvalidAmount(f"Invalid amount: {value!r}.")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        if not amount.is_finite():
            raise InvalidAmount(f"Invalid amount: {value!r}.")
        quantized = amount.quantize(CENT)
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmount(f"Invalid amount: {value!r}.") from exc
    if quantized != amount:
        raise InvalidAmount("Amounts can have at most two decimal places.")
    if abs(quantized) > MAX_AMOUNT:
        raise InvalidAmount(f"Amounts cannot exceed {MAX_AMOUNT}.")
    return quantized


def _positive_amount(value: Any) -> Decimal:
    amount = parse_amount(value)
    if amount <= 0:
        raise InvalidAmount("Amount must be greater than zero.")
    return amount


def _check_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise InvalidLimit(f"Limit must be a positive integer, got {limit!r}.")
    return limit


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _transaction(
    type_: TransactionType,
    from_user_id: Optional[str],
    from_username: Optional[str],
    to_user_id: Optional[str],
    to_username: Optional[str],
    amount: Decimal,
) -> Transaction:
    return Transaction(
        id=str(uuid.uuid4()),
        type=type_,
        from_user_id=from_user_id,
        from_username=from_username,
        to_user_id=to_user_id,
        to_username=to_username,
        amount=amount,
        timestamp=_now(),
    )


def _admin_log(admin_id: Optional[str], admin_username: Optional[str], action: str, details: str) -> AdminLog:
    return AdminLog(
        id=None,
        admin_id=admin_id,
        admin_username=admin_username,
        action=action,
        details=details,
        timestamp=_now(),
    )


class LedgerEngine:
    """
    Custodial ledger: balances, deposit requests, escrowed withdrawals
    and the append-only transaction and admin logs.

    Every mutating method runs as one unit of work on the injected store:
    it either commits completely or raises a `LedgerError` and leaves no
    trace. Methods that decide on a balance or escrow amount read the row
    under lock first. The engine never retries.
    """

    def __init__(self, store: LedgerStore, policy: Optional[LedgerPolicy] = None) -> None:
        self._store = store
        self._policy = policy or LedgerPolicy()

    @property
    def policy(self) -> LedgerPolicy:
        return self._policy

    # Balances

    def get_balance(self, user_id: str) -> Decimal:
        """Display balance; users without a row have a balance of zero."""

        with self._store.session() as session:
            row = session.get_balance(user_id)
        return row.balance if row is not None else ZERO

    def set_balance(
        self,
        user_id: str,
        username: Optional[str],
        amount: Any,
        admin_id: Optional[str] = None,
        admin_username: Optional[str] = None,
    ) -> Decimal:
        """Administrative override of a balance."""

        amount = parse_amount(amount)
        if amount < 0:
            raise InvalidAmount("Balance cannot be negative.")

        with self._store.atomic() as session:
            session.set_balance(user_id, username, amount)
            session.add_transaction(
                _transaction(TransactionType.ADMIN_SETBALANCE, SYSTEM, username, user_id, username, amount)
            )
            if admin_id is not None:
                session.add_admin_log(
                    _admin_log(
                        admin_id,
                        admin_username,
                        "set_balance",
                        f"Set balance of user {user_id} ({username}) to {amount}.",
                    )
                )
        logger.info("Balance of %s set to %s", user_id, amount)
        return amount

    def add_balance(self, user_id: str, username: Optional[str], amount: Any) -> Decimal:
        amount = _positive_amount(amount)
        with self._store.atomic() as session:
            self._credit(session, user_id, username, amount)
            new_balance = session.get_balance(user_id).balance
        logger.info("Credited %s to %s", amount, user_id)
        return new_balance

    def subtract_balance(self, user_id: str, username: Optional[str], amount: Any) -> Decimal:
        amount = _positive_amount(amount)
        with self._store.atomic() as session:
            current = self._locked_balance(session, user_id)
            if current < amount:
                logger.warning("Refused debit of %s from %s: balance %s", amount, user_id, current)
                raise InsufficientFunds(f"Insufficient funds: balance is {current}, needed {amount}.")
            session.increment_balance(user_id, username, -amount)
            session.add_transaction(
                _transaction(TransactionType.WITHDRAWAL, user_id, username, SYSTEM, "Bank", amount)
            )
        logger.info("Debited %s from %s", amount, user_id)
        return current - amount

    def transfer_funds(
        self,
        from_user_id: str,
        from_username: Optional[str],
        to_user_id: str,
        to_username: Optional[str],
        amount: Any,
    ) -> Decimal:
        """Move funds between two accounts; returns the sender's new balance."""

        amount = _positive_amount(amount)
        if not to_user_id:
            raise InvalidTransfer("Invalid recipient.")
        if from_user_id == to_user_id:
            raise InvalidTransfer("You cannot transfer funds to yourself.")

        with self._store.atomic() as session:
            locked = session.lock_balances([from_user_id, to_user_id])
            sender = locked.get(from_user_id)
            current = sender.balance if sender is not None else ZERO
            if current < amount:
                logger.warning(
                    "Refused transfer of %s from %s to %s: balance %s",
                    amount,
                    from_user_id,
                    to_user_id,
                    current,
                )
                raise InsufficientFunds(f"Insufficient funds: balance is {current}, needed {amount}.")
            self._ensure_headroom(session, to_user_id, amount)
            session.get_or_create_balance(to_user_id, to_username)
            session.increment_balance(from_user_id, from_username, -amount)
            session.increment_balance(to_user_id, to_username, amount)
            session.add_transaction(
                _transaction(
                    TransactionType.TRANSFER,
                    from_user_id,
                    from_username,
                    to_user_id,
                    to_username,
                    amount,
                )
            )
        logger.info("Transferred %s from %s to %s", amount, from_user_id, to_user_id)
        return current - amount

    # Deposits

    def request_deposit(
        self,
        user_id: str,
        discord_username: Optional[str],
        nation_username: str,
        amount: Any,
        receipt_url: Optional[str] = None,
    ) -> DepositRequest:
        amount = _positive_amount(amount)
        request = DepositRequest(
            id=None,
            user_id=user_id,
            discord_username=discord_username,
            nation_username=nation_username,
            amount=amount,
            receipt_url=receipt_url,
            status=RequestStatus.PENDING,
            timestamp=_now(),
        )
        with self._store.atomic() as session:
            created = session.add_deposit_request(request)
        logger.info("Deposit request #%s of %s opened by %s", created.id, amount, user_id)
        return created

    def approve_deposit(
        self,
        user_id: str,
        amount: Any = None,
        username: Optional[str] = None,
        admin_id: Optional[str] = None,
        admin_username: Optional[str] = None,
        request_id: Optional[int] = None,
    ) -> DepositRequest:
        """
        Credit a pending deposit request and mark it approved.

        The request is matched by `request_id` when given, otherwise by the
        oldest pending request of `user_id` for exactly `amount`.
        """

        amount = self._match_amount(amount, request_id)
        with self._store.atomic() as session:
            request = self._match_deposit(session, user_id, amount, request_id)
            display_name = username or request.discord_username
            self._credit(session, user_id, display_name, request.amount)
            session.set_deposit_status(request.id, RequestStatus.APPROVED)
            session.add_transaction(
                _transaction(
                    TransactionType.ADMIN_APPROVE,
                    admin_id,
                    admin_username,
                    user_id,
                    display_name,
                    request.amount,
                )
            )
            session.add_admin_log(
                _admin_log(
                    admin_id,
                    admin_username,
                    "approve_deposit",
                    f"Approved deposit #{request.id} of {request.amount} for user {user_id} ({display_name}).",
                )
            )
        logger.info("Deposit request #%s approved by %s", request.id, admin_id)
        return replace(request, status=RequestStatus.APPROVED)

    def reject_deposit(
        self,
        user_id: str,
        amount: Any = None,
        admin_id: Optional[str] = None,
        admin_username: Optional[str] = None,
        request_id: Optional[int] = None,
    ) -> DepositRequest:
        amount = self._match_amount(amount, request_id)
        with self._store.atomic() as session:
            request = self._match_deposit(session, user_id, amount, request_id)
            session.set_deposit_status(request.id, RequestStatus.REJECTED)
            session.add_transaction(
                _transaction(
                    TransactionType.ADMIN_REJECT,
                    admin_id,
                    admin_username,
                    user_id,
                    request.discord_username,
                    request.amount,
                )
            )
            session.add_admin_log(
                _admin_log(
                    admin_id,
                    admin_username,
                    "reject_deposit",
                    f"Rejected deposit #{request.id} of {request.amount} for user {user_id}.",
                )
            )
        logger.info("Deposit request #%s rejected by %s", request.id, admin_id)
        return replace(request, status=RequestStatus.REJECTED)

    def get_pending_deposits(self) -> List[DepositRequest]:
        try:
            with self._store.session() as session:
                return session.list_deposit_requests(status=RequestStatus.PENDING)
        except StoreError:
            logger.exception("Could not list pending deposit requests")
            return []

    def get_user_deposits(self, user_id: str) -> List[DepositRequest]:
        try:
            with self._store.session() as session:
                return session.list_deposit_requests(user_id=user_id)
        except StoreError:
            logger.exception("Could not list deposit requests for %s", user_id)
            return []

    def get_deposit_request(self, request_id: int) -> Optional[DepositRequest]:
        with self._store.session() as session:
            return session.get_deposit_request(request_id)

    # Escrow / withdrawals

    def place_in_escrow(
        self,
        user_id: str,
        nation_name: str,
        amount: Any,
        username: Optional[str] = None,
    ) -> WithdrawalRequest:
        """Move funds from the spendable balance into a new pending withdrawal."""

        amount = _positive_amount(amount)
        with self._store.atomic() as session:
            current = self._locked_balance(session, user_id)
            if current < amount:
                logger.warning("Refused escrow of %s for %s: balance %s", amount, user_id, current)
                raise InsufficientFunds(f"Insufficient funds: balance is {current}, needed {amount}.")
            session.increment_balance(user_id, username, -amount)
            withdrawal = session.add_withdrawal(
                WithdrawalRequest(
                    id=None,
                    user_id=user_id,
                    amount=amount,
                    nation_name=nation_name,
                    status=RequestStatus.PENDING,
                    timestamp=_now(),
                )
            )
            session.add_transaction(
                _transaction(TransactionType.WITHDRAWAL, user_id, username, SYSTEM, "Escrow", amount)
            )
        logger.info("Escrowed %s for %s as withdrawal #%s", amount, user_id, withdrawal.id)
        return withdrawal

    def release_escrow(
        self,
        user_id: str,
        amount: Any,
        withdrawal_id: Optional[int] = None,
        username: Optional[str] = None,
        admin_id: Optional[str] = ADMIN,
        admin_username: Optional[str] = "Admin",
    ) -> Decimal:
        """
        Return escrowed funds to the user's spendable balance.

        Draws from the given withdrawal, or from all of the user's holds
        (rejected ones first, then oldest). A pending hold drained to zero
        becomes rejected. The admin-log row is written with the release.
        Returns the new balance.
        """

        amount = _positive_amount(amount)
        with self._store.atomic() as session:
            username = username or self._cached_username(session, user_id)
            if withdrawal_id is not None:
                hold = session.get_withdrawal(withdrawal_id, for_update=True)
                if hold is None or hold.user_id != user_id or hold.status == RequestStatus.APPROVED:
                    raise NoMatchingRequest(f"No releasable withdrawal #{withdrawal_id} for user {user_id}.")
                holds = [hold]
            else:
                holds = session.lock_releasable_withdrawals(user_id)

            held = sum((hold.amount for hold in holds), ZERO)
            if held < amount:
                logger.warning("Refused release of %s for %s: %s held", amount, user_id, held)
                raise InsufficientFunds(f"Only {held} is held in escrow, cannot release {amount}.")

            remaining = amount
            for hold in holds:
                if remaining <= 0:
                    break
                taken = min(hold.amount, remaining)
                left = hold.amount - taken
                status = RequestStatus.REJECTED if left == 0 else hold.status
                session.update_withdrawal(hold.id, left, status)
                remaining -= taken

            self._ensure_headroom(session, user_id, amount)
            session.increment_balance(user_id, username, amount)
            session.add_transaction(
                _transaction(TransactionType.DEPOSIT, SYSTEM, "Escrow", user_id, username, amount)
            )
            session.add_admin_log(
                _admin_log(
                    admin_id,
                    admin_username,
                    "release_escrow",
                    f"Released {amount} from escrow for user {user_id}.",
                )
            )
            new_balance = session.get_balance(user_id).balance
        logger.info("Released %s from escrow back to %s", amount, user_id)
        return new_balance

    def get_pending_withdrawals(self) -> List[WithdrawalRequest]:
        try:
            with self._store.session() as session:
                return session.list_withdrawals(status=RequestStatus.PENDING)
        except StoreError:
            logger.exception("Could not list pending withdrawals")
            return []

    def get_withdrawal(self, withdrawal_id: int) -> Optional[WithdrawalRequest]:
        with self._store.session() as session:
            return session.get_withdrawal(withdrawal_id)

    def approve_withdrawal(
        self,
        user_id: str,
        amount: Any = None,
        withdrawal_id: Optional[int] = None,
        admin_id: Optional[str] = ADMIN,
        admin_username: Optional[str] = "Admin",
    ) -> WithdrawalRequest:
        """
        Mark a pending withdrawal as paid out.

        The escrowed funds are considered disbursed externally; no balance
        changes.
        """

        amount = self._match_amount(amount, withdrawal_id)
        with self._store.atomic() as session:
            hold = self._match_withdrawal(session, user_id, amount, withdrawal_id)
            owner = self._cached_username(session, user_id)
            session.update_withdrawal(hold.id, hold.amount, RequestStatus.APPROVED)
            session.add_transaction(
                _transaction(
                    TransactionType.ADMIN_WITHDRAWAL_APPROVE,
                    admin_id,
                    admin_username,
                    user_id,
                    owner,
                    hold.amount,
                )
            )
            session.add_admin_log(
                _admin_log(
                    admin_id,
                    admin_username,
                    "approve_withdrawal",
                    f"Approved withdrawal #{hold.id} of {hold.amount} for user {user_id} "
                    f"to {hold.nation_name}.",
                )
            )
        logger.info("Withdrawal #%s approved by %s", hold.id, admin_id)
        return replace(hold, status=RequestStatus.APPROVED)

    def reject_withdrawal(
        self,
        user_id: str,
        amount: Any = None,
        withdrawal_id: Optional[int] = None,
        admin_id: Optional[str] = ADMIN,
        admin_username: Optional[str] = "Admin",
    ) -> WithdrawalRequest:
        """
        Mark a pending withdrawal as rejected.

        With `LedgerPolicy.release_escrow_on_reject` the held funds go back
        to the balance in the same unit of work; otherwise they stay on the
        rejected row until `release_escrow` is called.
        """

        amount = self._match_amount(amount, withdrawal_id)
        release = self._policy.release_escrow_on_reject
        with self._store.atomic() as session:
            hold = self._match_withdrawal(session, user_id, amount, withdrawal_id)
            owner = self._cached_username(session, user_id)
            kept = ZERO if release else hold.amount
            session.update_withdrawal(hold.id, kept, RequestStatus.REJECTED)
            session.add_transaction(
                _transaction(
                    TransactionType.ADMIN_WITHDRAWAL_REJECT,
                    admin_id,
                    admin_username,
                    user_id,
                    owner,
                    hold.amount,
                )
            )
            if release:
                self._ensure_headroom(session, user_id, hold.amount)
                session.increment_balance(user_id, owner, hold.amount)
                session.add_transaction(
                    _transaction(TransactionType.DEPOSIT, SYSTEM, "Escrow", user_id, owner, hold.amount)
                )
            session.add_admin_log(
                _admin_log(
                    admin_id,
                    admin_username,
                    "reject_withdrawal",
                    f"Rejected withdrawal #{hold.id} of {hold.amount} for user {user_id}"
                    f"{' and released the funds' if release else ''}.",
                )
            )
        logger.info("Withdrawal #%s rejected by %s (released=%s)", hold.id, admin_id, release)
        return replace(hold, amount=kept, status=RequestStatus.REJECTED)

    # Reconciliation

    def reconcile(self) -> LedgerReport:
        with self._store.session() as session:
            return LedgerReport(
                approved_deposits=session.sum_deposits(RequestStatus.APPROVED),
                approved_withdrawals=session.sum_withdrawals([RequestStatus.APPROVED]),
                held_in_escrow=session.sum_withdrawals([RequestStatus.PENDING, RequestStatus.REJECTED]),
                total_balances=session.sum_balances(),
            )

    def verify_ledger(self) -> bool:
        report = self.reconcile()
        if not report.balanced:
            logger.error(
                "Ledger mismatch: approved deposits - approved withdrawals = %s, "
                "balances = %s, held in escrow = %s",
                report.master_balance,
                report.total_balances,
                report.held_in_escrow,
            )
        return report.balanced

    def ensure_balanced(self) -> LedgerReport:
        report = self.reconcile()
        if not report.balanced:
            raise LedgerMismatch(
                f"Ledger mismatch! Approved deposits - approved withdrawals ({report.master_balance}) "
                f"does not equal balances plus escrow ({report.total_balances + report.held_in_escrow}).",
                report,
            )
        return report

    def get_master_account_balance(self) -> Decimal:
        return self.reconcile().master_balance

    # Reporting

    def get_transactions(self, limit: int = 10) -> List[Transaction]:
        limit = _check_limit(limit)
        try:
            with self._store.session() as session:
                return session.list_transactions(limit)
        except StoreError:
            logger.exception("Could not fetch transactions")
            return []

    def get_transaction_logs(self, limit: int = 10) -> List[Transaction]:
        return self.get_transactions(limit)

    def get_transactions_by_user(self, user_id: str, limit: int = 5) -> List[Transaction]:
        limit = _check_limit(limit)
        try:
            with self._store.session() as session:
                return session.list_transactions(limit, user_id=user_id)
        except StoreError:
            logger.exception("Could not fetch transactions for %s", user_id)
            return []

    def get_admin_logs(self, limit: int = 10) -> List[AdminLog]:
        limit = _check_limit(limit)
        try:
            with self._store.session() as session:
                return session.list_admin_logs(limit)
        except StoreError:
            logger.exception("Could not fetch admin logs")
            return []

    # Profiles

    def update_user_info(
        self,
        user_id: str,
        pirate_name: Optional[str] = None,
        real_name: Optional[str] = None,
        ship_name: Optional[str] = None,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> None:
        """Overwrite the supplied profile fields; omitted ones keep their value."""

        fields = {
            "pirate_name": pirate_name,
            "real_name": real_name,
            "ship_name": ship_name,
            "email": email,
            "phone_number": phone_number,
        }
        fields = {name: value for name, value in fields.items() if value is not None}
        with self._store.atomic() as session:
            session.get_or_create_balance(user_id, None)
            session.update_profile(user_id, fields)
        logger.info("Updated profile fields %s for %s", sorted(fields), user_id)

    def lookup_user_info(self, user_id: str) -> Optional[UserInfo]:
        with self._store.session() as session:
            row = session.get_balance(user_id)
            if row is None:
                return None
            deposit = session.latest_approved_deposit(user_id)
        return UserInfo(
            user_id=row.user_id,
            username=row.username,
            balance=row.balance,
            nation_username=(deposit.nation_username if deposit else None) or NOT_SET,
            pirate_name=row.pirate_name or NOT_SET,
            real_name=row.real_name or NOT_SET,
            ship_name=row.ship_name or NOT_SET,
            email=row.email or NOT_SET,
            phone_number=row.phone_number or NOT_SET,
        )

    # Audit

    def log_admin_action(
        self,
        admin_id: Optional[str],
        admin_username: Optional[str],
        action: str,
        details: str,
    ) -> None:
        with self._store.atomic() as session:
            session.add_admin_log(_admin_log(admin_id, admin_username, action, details))
        logger.info("Admin %s (%s): %s - %s", admin_username, admin_id, action, details)

    # Internals

    @staticmethod
    def _match_amount(amount: Any, record_id: Optional[int]) -> Optional[Decimal]:
        if amount is None:
            if record_id is None:
                raise InvalidAmount("An amount or a request id is required.")
            return None
        return _positive_amount(amount)

    @staticmethod
    def _locked_balance(session: LedgerSession, user_id: str) -> Decimal:
        row = session.get_balance(user_id, for_update=True)
        return row.balance if row is not None else ZERO

    @staticmethod
    def _cached_username(session: LedgerSession, user_id: str) -> Optional[str]:
        row = session.get_balance(user_id)
        return row.username if row is not None else None

    @staticmethod
    def _ensure_headroom(session: LedgerSession, user_id: str, amount: Decimal) -> Decimal:
        """Lock `user_id`'s row and refuse a credit that would pass `MAX_AMOUNT`."""

        row = session.get_balance(user_id, for_update=True)
        current = row.balance if row is not None else ZERO
        if current + amount > MAX_AMOUNT:
            logger.warning("Refused credit of %s to %s: balance %s", amount, user_id, current)
            raise InvalidAmount(f"Crediting {amount} would take the balance above {MAX_AMOUNT}.")
        return current

    @classmethod
    def _credit(cls, session: LedgerSession, user_id: str, username: Optional[str], amount: Decimal) -> None:
        cls._ensure_headroom(session, user_id, amount)
        session.increment_balance(user_id, username, amount)
        session.add_transaction(
            _transaction(TransactionType.DEPOSIT, SYSTEM, "Admin", user_id, username, amount)
        )

    @staticmethod
    def _match_deposit(
        session: LedgerSession,
        user_id: str,
        amount: Optional[Decimal],
        request_id: Optional[int],
    ) -> DepositRequest:
        if request_id is not None:
            request = session.get_deposit_request(request_id, for_update=True)
            if (
                request is None
                or request.user_id != user_id
                or request.status != RequestStatus.PENDING
                or (amount is not None and request.amount != amount)
            ):
                logger.warning("No pending deposit request #%s for %s", request_id, user_id)
                raise NoMatchingRequest(f"No pending deposit request #{request_id} for user {user_id}.")
            return request

        request = session.find_pending_deposit(user_id, amount, for_update=True)
        if request is None:
            logger.warning("No pending deposit request of %s for %s", amount, user_id)
            raise NoMatchingRequest(f"No pending deposit request of {amount} for user {user_id}.")
        return request

    @staticmethod
    def _match_withdrawal(
        session: LedgerSession,
        user_id: str,
        amount: Optional[Decimal],
        withdrawal_id: Optional[int],
    ) -> WithdrawalRequest:
        if withdrawal_id is not None:
            hold = session.get_withdrawal(withdrawal_id, for_update=True)
            if (
                hold is None
                or hold.user_id != user_id
                or hold.status != RequestStatus.PENDING
                or (amount is not None and hold.amount != amount)
            ):
                logger.warning("No pending withdrawal #%s for %s", withdrawal_id, user_id)
                raise NoMatchingRequest(f"No pending withdrawal #{withdrawal_id} for user {user_id}.")
            return hold

        hold = session.find_pending_withdrawal(user_id, amount, for_update=True)
        if hold is None:
            logger.warning("No pending withdrawal of %s for %s", amount, user_id)
            raise NoMatchingRequest(f"No pending withdrawal of {amount} for user {user_id}.")
        return hold
