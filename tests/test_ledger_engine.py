import os
import shutil
import tempfile
import threading
import unittest
from decimal import Decimal
from unittest import mock

from application.ledger import LedgerEngine, parse_amount
from domain.errors import (
    InsufficientFunds,
    InvalidAmount,
    InvalidLimit,
    InvalidTransfer,
    LedgerMismatch,
    NoMatchingRequest,
    StoreUnavailable,
)
from domain.models import MAX_AMOUNT, NOT_SET, LedgerPolicy, RequestStatus, TransactionType
from fakes import InMemoryLedgerSession, InMemoryLedgerStore
from infrastructure.db.ledger_store_sqlite import SqliteLedgerStore


class LedgerEngineContract:
    """Behaviour every store backend must give the engine."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self) -> None:
        self.store = self.make_store()
        self.engine = LedgerEngine(self.store)

    def fund(self, user_id: str, amount: str, engine: LedgerEngine = None) -> None:
        engine = engine or self.engine
        request = engine.request_deposit(user_id, f"user{user_id}", "Nation", amount, "https://receipt")
        engine.approve_deposit(user_id, amount, f"user{user_id}", "admin", "Admin", request_id=request.id)

    # Balances

    def test_unknown_user_has_zero_balance(self):
        self.assertEqual(self.engine.get_balance("nobody"), Decimal("0.00"))
        self.assertIsNone(self.engine.lookup_user_info("nobody"))

    def test_add_then_subtract_round_trip(self):
        self.engine.add_balance("A", "alice", 100)
        self.engine.subtract_balance("A", "alice", 100)

        self.assertEqual(self.engine.get_balance("A"), Decimal("0"))
        transactions = self.engine.get_transactions_by_user("A", 10)
        self.assertEqual(
            [tx.type for tx in transactions],
            [TransactionType.WITHDRAWAL, TransactionType.DEPOSIT],
        )

    def test_subtract_insufficient_funds_changes_nothing(self):
        self.engine.add_balance("A", "alice", "20")
        self.engine.add_balance("B", "bob", "5")

        with self.assertRaises(InsufficientFunds):
            self.engine.subtract_balance("A", "alice", "25")

        self.assertEqual(self.engine.get_balance("A"), Decimal("20"))
        self.assertEqual(self.engine.get_balance("B"), Decimal("5"))
        self.assertEqual(len(self.engine.get_transactions_by_user("A", 10)), 1)

    def test_subtract_decreases_by_exact_amount(self):
        self.engine.add_balance("A", "alice", "10.50")
        self.engine.add_balance("B", "bob", "3")

        new_balance = self.engine.subtract_balance("A", "alice", "0.25")

        self.assertEqual(new_balance, Decimal("10.25"))
        self.assertEqual(self.engine.get_balance("A"), Decimal("10.25"))
        self.assertEqual(self.engine.get_balance("B"), Decimal("3"))

    def test_subtract_from_missing_account_is_insufficient(self):
        with self.assertRaises(InsufficientFunds):
            self.engine.subtract_balance("ghost", "ghost", "1")
        self.assertIsNone(self.engine.lookup_user_info("ghost"))

    def test_invalid_amounts_are_refused(self):
        for amount in (0, -5, "0", "-1.00", 1.5, "abc", "1.001", None, True, "NaN", "Infinity"):
            with self.subTest(amount=amount):
                with self.assertRaises(InvalidAmount):
                    self.engine.add_balance("A", "alice", amount)
        self.assertEqual(self.engine.get_transactions(10), [])

    def test_amounts_above_column_range_are_refused(self):
        with self.assertRaises(InvalidAmount):
            self.engine.request_deposit("A", "alice", "Atlantis", "100000000000000000", "https://receipt")
        with self.assertRaises(InvalidAmount):
            self.engine.set_balance("A", "alice", "10000000000000000.00")

        self.assertEqual(self.engine.get_pending_deposits(), [])
        self.assertIsNone(self.engine.lookup_user_info("A"))

    def test_credit_beyond_maximum_balance_is_refused(self):
        self.engine.set_balance("A", "alice", MAX_AMOUNT)
        self.engine.add_balance("B", "bob", "1")

        with self.assertRaises(InvalidAmount):
            self.engine.add_balance("A", "alice", "0.01")
        with self.assertRaises(InvalidAmount):
            self.engine.transfer_funds("B", "bob", "A", "alice", "1")

        self.assertEqual(self.engine.get_balance("A"), MAX_AMOUNT)
        self.assertEqual(self.engine.get_balance("B"), Decimal("1"))

    def test_set_balance_override(self):
        with self.assertRaises(InvalidAmount):
            self.engine.set_balance("A", "alice", "-1")

        self.engine.set_balance("A", "alice", "42", admin_id="admin", admin_username="Admin")
        self.assertEqual(self.engine.get_balance("A"), Decimal("42"))
        self.engine.set_balance("A", "alice", "0")
        self.assertEqual(self.engine.get_balance("A"), Decimal("0"))

        transactions = self.engine.get_transactions(10)
        self.assertEqual({tx.type for tx in transactions}, {TransactionType.ADMIN_SETBALANCE})
        self.assertEqual(transactions[0].from_user_id, "SYSTEM")
        self.assertEqual([log.action for log in self.engine.get_admin_logs(10)], ["set_balance"])

    # Transfers

    def test_add_transfer_subtract_scenario(self):
        self.engine.add_balance("A", "alice", 50)
        self.assertEqual(self.engine.get_balance("A"), Decimal("50"))

        self.engine.transfer_funds("A", "alice", "B", "bob", 30)
        self.assertEqual(self.engine.get_balance("A"), Decimal("20"))
        self.assertEqual(self.engine.get_balance("B"), Decimal("30"))

        with self.assertRaises(InsufficientFunds):
            self.engine.subtract_balance("A", "alice", 25)
        self.assertEqual(self.engine.get_balance("A"), Decimal("20"))

        transfers = [tx for tx in self.engine.get_transactions(10) if tx.type == TransactionType.TRANSFER]
        self.assertEqual(len(transfers), 1)
        self.assertEqual((transfers[0].from_user_id, transfers[0].to_user_id), ("A", "B"))

    def test_transfer_preconditions(self):
        self.engine.add_balance("A", "alice", 10)

        with self.assertRaises(InvalidTransfer):
            self.engine.transfer_funds("A", "alice", "A", "alice", 5)
        with self.assertRaises(InvalidTransfer):
            self.engine.transfer_funds("A", "alice", "", "nobody", 5)
        with self.assertRaises(InvalidAmount):
            self.engine.transfer_funds("A", "alice", "B", "bob", 0)

        self.assertEqual(self.engine.get_balance("A"), Decimal("10"))

    def test_failed_transfer_leaves_no_trace(self):
        self.engine.add_balance("A", "alice", 10)

        with self.assertRaises(InsufficientFunds):
            self.engine.transfer_funds("A", "alice", "B", "bob", "10.01")

        self.assertIsNone(self.engine.lookup_user_info("B"))
        self.assertEqual(self.engine.get_balance("A"), Decimal("10"))
        self.assertEqual(len(self.engine.get_transactions(10)), 1)

    def test_concurrent_transfers_never_overdraw(self):
        self.engine.add_balance("A", "alice", 100)
        outcomes = []
        outcomes_lock = threading.Lock()

        def send(index: int) -> None:
            try:
                self.engine.transfer_funds("A", "alice", f"R{index}", f"r{index}", 10)
                outcome = "ok"
            except InsufficientFunds:
                outcome = "refused"
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=send, args=(i,)) for i in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count("ok"), 10)
        self.assertEqual(outcomes.count("refused"), 6)
        self.assertEqual(self.engine.get_balance("A"), Decimal("0"))
        received = sum((self.engine.get_balance(f"R{i}") for i in range(16)), Decimal("0"))
        self.assertEqual(received, Decimal("100"))

    def test_opposite_direction_transfers_complete(self):
        self.engine.add_balance("A", "alice", 50)
        self.engine.add_balance("B", "bob", 50)

        def shuttle(src: str, dst: str) -> None:
            for _ in range(10):
                self.engine.transfer_funds(src, src, dst, dst, 1)

        threads = [
            threading.Thread(target=shuttle, args=("A", "B")),
            threading.Thread(target=shuttle, args=("B", "A")),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(self.engine.get_balance("A"), Decimal("50"))
        self.assertEqual(self.engine.get_balance("B"), Decimal("50"))

    # Deposits

    def test_approve_deposit_credits_exactly_once(self):
        self.engine.request_deposit("A", "alice", "Atlantis", "50", "https://receipt")

        self.engine.approve_deposit("A", "50", "alice", "admin", "Admin")
        with self.assertRaises(NoMatchingRequest):
            self.engine.approve_deposit("A", "50", "alice", "admin", "Admin")

        self.assertEqual(self.engine.get_balance("A"), Decimal("50"))
        self.assertEqual(self.engine.get_pending_deposits(), [])

    def test_approve_deposit_records_ledger_and_audit_rows(self):
        request = self.engine.request_deposit("A", "alice", "Atlantis", "12.34", "https://receipt")
        approved = self.engine.approve_deposit("A", None, None, "admin", "Admin", request_id=request.id)

        self.assertEqual(approved.status, RequestStatus.APPROVED)
        self.assertEqual(
            [tx.type for tx in self.engine.get_transactions(10)],
            [TransactionType.ADMIN_APPROVE, TransactionType.DEPOSIT],
        )
        logs = self.engine.get_admin_logs(10)
        self.assertEqual(logs[0].action, "approve_deposit")
        self.assertEqual(logs[0].admin_id, "admin")
        self.assertEqual(self.engine.lookup_user_info("A").username, "alice")

    def test_approve_by_id_disambiguates_equal_amounts(self):
        first = self.engine.request_deposit("A", "alice", "First", "25", "https://one")
        second = self.engine.request_deposit("A", "alice", "Second", "25", "https://two")

        self.engine.approve_deposit("A", "25", "alice", "admin", "Admin", request_id=second.id)

        self.assertEqual(self.engine.get_deposit_request(first.id).status, RequestStatus.PENDING)
        self.assertEqual(self.engine.get_deposit_request(second.id).status, RequestStatus.APPROVED)
        self.assertEqual(self.engine.lookup_user_info("A").nation_username, "Second")

    def test_approve_by_id_checks_owner_amount_and_state(self):
        request = self.engine.request_deposit("A", "alice", "Atlantis", "25", "https://receipt")

        with self.assertRaises(NoMatchingRequest):
            self.engine.approve_deposit("B", None, "bob", "admin", "Admin", request_id=request.id)
        with self.assertRaises(NoMatchingRequest):
            self.engine.approve_deposit("A", "26", "alice", "admin", "Admin", request_id=request.id)
        with self.assertRaises(NoMatchingRequest):
            self.engine.approve_deposit("A", None, "alice", "admin", "Admin", request_id=999)

        self.engine.reject_deposit("A", None, "admin", "Admin", request_id=request.id)
        with self.assertRaises(NoMatchingRequest):
            self.engine.approve_deposit("A", None, "alice", "admin", "Admin", request_id=request.id)
        self.assertEqual(self.engine.get_balance("A"), Decimal("0"))

    def test_approve_without_pending_request_has_no_effect(self):
        with self.assertRaises(NoMatchingRequest):
            self.engine.approve_deposit("A", "10", "alice", "admin", "Admin")

        self.assertEqual(self.engine.get_balance("A"), Decimal("0"))
        self.assertEqual(self.engine.get_transactions(10), [])
        self.assertEqual(self.engine.get_admin_logs(10), [])

    def test_approve_requires_amount_or_id(self):
        with self.assertRaises(InvalidAmount):
            self.engine.approve_deposit("A", None, "alice", "admin", "Admin")

    def test_reject_deposit(self):
        self.engine.request_deposit("A", "alice", "Atlantis", "10", "https://receipt")

        rejected = self.engine.reject_deposit("A", "10", "admin", "Admin")

        self.assertEqual(rejected.status, RequestStatus.REJECTED)
        self.assertEqual(self.engine.get_balance("A"), Decimal("0"))
        self.assertEqual([tx.type for tx in self.engine.get_transactions(10)], [TransactionType.ADMIN_REJECT])
        self.assertEqual(self.engine.get_admin_logs(10)[0].action, "reject_deposit")
        with self.assertRaises(NoMatchingRequest):
            self.engine.reject_deposit("A", "10", "admin", "Admin")

    def test_users_only_see_their_own_deposits(self):
        self.engine.request_deposit("A", "alice", "Atlantis", "10", "https://a")
        self.engine.request_deposit("B", "bob", "Bohemia", "20", "https://b")

        own = self.engine.get_user_deposits("A")

        self.assertEqual([d.user_id for d in own], ["A"])
        self.assertEqual(len(self.engine.get_pending_deposits()), 2)

    # Escrow / withdrawals

    def test_escrow_then_approve_scenario(self):
        self.fund("A", "20")

        withdrawal = self.engine.place_in_escrow("A", "Nation1", 20)

        self.assertEqual(self.engine.get_balance("A"), Decimal("0"))
        pending = self.engine.get_pending_withdrawals()
        self.assertEqual([(w.user_id, w.amount, w.status) for w in pending], [("A", Decimal("20"), RequestStatus.PENDING)])

        approved = self.engine.approve_withdrawal("A", 20)

        self.assertEqual(approved.id, withdrawal.id)
        self.assertEqual(self.engine.get_withdrawal(withdrawal.id).status, RequestStatus.APPROVED)
        self.assertEqual(self.engine.get_balance("A"), Decimal("0"))
        self.assertEqual(self.engine.get_pending_withdrawals(), [])
        self.assertTrue(self.engine.verify_ledger())
        self.assertEqual(self.engine.get_master_account_balance(), Decimal("0"))

    def test_escrow_requires_funds(self):
        self.fund("A", "5")

        with self.assertRaises(InsufficientFunds):
            self.engine.place_in_escrow("A", "Nation1", "5.01")

        self.assertEqual(self.engine.get_balance("A"), Decimal("5"))
        self.assertEqual(self.engine.get_pending_withdrawals(), [])

    def test_each_withdrawal_is_a_separate_request(self):
        self.fund("A", "50")

        first = self.engine.place_in_escrow("A", "Nation1", 10)
        second = self.engine.place_in_escrow("A", "Nation2", 15)

        self.assertNotEqual(first.id, second.id)
        self.assertEqual(len(self.engine.get_pending_withdrawals()), 2)

        self.engine.approve_withdrawal("A", withdrawal_id=second.id)

        self.assertEqual(self.engine.get_withdrawal(first.id).status, RequestStatus.PENDING)
        self.assertTrue(self.engine.verify_ledger())

    def test_approve_withdrawal_twice_fails(self):
        self.fund("A", "10")
        self.engine.place_in_escrow("A", "Nation1", 10)

        self.engine.approve_withdrawal("A", 10)
        with self.assertRaises(NoMatchingRequest):
            self.engine.approve_withdrawal("A", 10)
        with self.assertRaises(NoMatchingRequest):
            self.engine.reject_withdrawal("A", 10)

    def test_reject_withdrawal_releases_funds_by_default(self):
        self.fund("A", "30")
        withdrawal = self.engine.place_in_escrow("A", "Nation1", 30)

        rejected = self.engine.reject_withdrawal("A", withdrawal_id=withdrawal.id, admin_id="admin", admin_username="Admin")

        self.assertEqual(rejected.status, RequestStatus.REJECTED)
        self.assertEqual(self.engine.get_balance("A"), Decimal("30"))
        self.assertEqual(self.engine.get_withdrawal(withdrawal.id).amount, Decimal("0"))
        self.assertTrue(self.engine.verify_ledger())
        self.assertEqual(self.engine.get_admin_logs(1)[0].action, "reject_withdrawal")
        with self.assertRaises(InsufficientFunds):
            self.engine.release_escrow("A", 1)

    def test_reject_without_auto_release_needs_explicit_release(self):
        engine = LedgerEngine(self.store, LedgerPolicy(release_escrow_on_reject=False))
        self.fund("A", "30", engine)
        withdrawal = engine.place_in_escrow("A", "Nation1", 30)

        engine.reject_withdrawal("A", 30)

        self.assertEqual(engine.get_balance("A"), Decimal("0"))
        self.assertEqual(engine.get_withdrawal(withdrawal.id).amount, Decimal("30"))
        self.assertTrue(engine.verify_ledger())

        self.assertEqual(engine.release_escrow("A", 30), Decimal("30"))
        self.assertEqual(engine.get_balance("A"), Decimal("30"))
        with self.assertRaises(InsufficientFunds):
            engine.release_escrow("A", 1)
        self.assertTrue(engine.verify_ledger())

    def test_partial_release_of_pending_withdrawal(self):
        self.fund("A", "30")
        withdrawal = self.engine.place_in_escrow("A", "Nation1", 30)

        self.assertEqual(self.engine.release_escrow("A", 10), Decimal("10"))

        remaining = self.engine.get_withdrawal(withdrawal.id)
        self.assertEqual((remaining.amount, remaining.status), (Decimal("20"), RequestStatus.PENDING))
        self.assertTrue(self.engine.verify_ledger())

        self.engine.approve_withdrawal("A", 20)
        self.assertTrue(self.engine.verify_ledger())
        self.assertEqual(self.engine.get_master_account_balance(), Decimal("10"))

    def test_release_is_audited_with_the_acting_admin(self):
        self.fund("A", "10")
        self.engine.place_in_escrow("A", "Nation1", 10)

        self.engine.release_escrow("A", 4, admin_id="42", admin_username="boss")

        log = self.engine.get_admin_logs(1)[0]
        self.assertEqual((log.action, log.admin_id, log.admin_username), ("release_escrow", "42", "boss"))
        self.assertIn("4.00", log.details)

    def test_escrow_rows_carry_the_owner_name(self):
        self.fund("A", "30")
        self.engine.place_in_escrow("A", "Nation1", 10)
        second = self.engine.place_in_escrow("A", "Nation2", 10)
        self.engine.approve_withdrawal("A", withdrawal_id=second.id)
        self.engine.reject_withdrawal("A", 10)
        self.engine.place_in_escrow("A", "Nation3", 5)
        self.engine.release_escrow("A", 5)

        escrow_rows = [
            tx
            for tx in self.engine.get_transactions(20)
            if tx.type
            in (
                TransactionType.ADMIN_WITHDRAWAL_APPROVE,
                TransactionType.ADMIN_WITHDRAWAL_REJECT,
                TransactionType.DEPOSIT,
            )
        ]
        self.assertEqual(len(escrow_rows), 5)
        self.assertEqual({tx.to_username for tx in escrow_rows}, {"userA"})

    def test_releasing_a_whole_pending_withdrawal_closes_it(self):
        self.fund("A", "10")
        withdrawal = self.engine.place_in_escrow("A", "Nation1", 10)

        self.engine.release_escrow("A", 10, withdrawal_id=withdrawal.id)

        self.assertEqual(self.engine.get_withdrawal(withdrawal.id).status, RequestStatus.REJECTED)
        self.assertEqual(self.engine.get_pending_withdrawals(), [])

    def test_release_by_id_refuses_foreign_or_paid_withdrawals(self):
        self.fund("A", "10")
        withdrawal = self.engine.place_in_escrow("A", "Nation1", 10)

        with self.assertRaises(NoMatchingRequest):
            self.engine.release_escrow("B", 5, withdrawal_id=withdrawal.id)

        self.engine.approve_withdrawal("A", 10)
        with self.assertRaises(NoMatchingRequest):
            self.engine.release_escrow("A", 5, withdrawal_id=withdrawal.id)

    # Reconciliation

    def test_ledger_balances_after_mixed_activity(self):
        self.fund("A", "100")
        self.fund("B", "40.50")
        self.engine.transfer_funds("A", "alice", "B", "bob", "25.25")
        withdrawal = self.engine.place_in_escrow("B", "Bohemia", "60")
        self.assertTrue(self.engine.verify_ledger())
        self.engine.approve_withdrawal("B", withdrawal_id=withdrawal.id)

        report = self.engine.ensure_balanced()

        self.assertTrue(self.engine.verify_ledger())
        self.assertEqual(report.approved_deposits, Decimal("140.50"))
        self.assertEqual(report.approved_withdrawals, Decimal("60"))
        self.assertEqual(report.total_balances, Decimal("80.50"))
        self.assertEqual(self.engine.get_master_account_balance(), Decimal("80.50"))

    def test_manual_override_is_reported_as_mismatch(self):
        self.fund("A", "10")
        self.engine.set_balance("A", "alice", "1000")

        self.assertFalse(self.engine.verify_ledger())
        with self.assertRaises(LedgerMismatch) as caught:
            self.engine.ensure_balanced()
        self.assertEqual(caught.exception.report.total_balances, Decimal("1000"))
        self.assertEqual(self.engine.get_master_account_balance(), Decimal("10"))

    # Reporting

    def test_transaction_queries_validate_limit(self):
        for limit in (0, -1, "5", 2.0, True, None):
            with self.subTest(limit=limit):
                with self.assertRaises(InvalidLimit):
                    self.engine.get_transactions(limit)
                with self.assertRaises(InvalidLimit):
                    self.engine.get_transactions_by_user("A", limit)

    def test_transactions_are_newest_first(self):
        self.engine.add_balance("A", "alice", 1)
        self.engine.add_balance("B", "bob", 2)
        self.engine.add_balance("A", "alice", 3)

        latest = self.engine.get_transaction_logs(2)

        self.assertEqual([tx.amount for tx in latest], [Decimal("3"), Decimal("2")])
        self.assertEqual([tx.amount for tx in self.engine.get_transactions_by_user("A", 5)], [Decimal("3"), Decimal("1")])
        self.assertEqual(len({tx.id for tx in self.engine.get_transactions(10)}), 3)

    # Profiles and audit

    def test_lookup_user_info_placeholders(self):
        self.engine.update_user_info("A", pirate_name="Jack")

        info = self.engine.lookup_user_info("A")

        self.assertEqual(info.pirate_name, "Jack")
        self.assertEqual(info.balance, Decimal("0"))
        for value in (info.real_name, info.ship_name, info.email, info.phone_number, info.nation_username):
            self.assertEqual(value, NOT_SET)

    def test_update_user_info_keeps_omitted_fields(self):
        self.engine.update_user_info("A", pirate_name="Jack", email="jack@sea.example")
        self.engine.update_user_info("A", ship_name="Pearl")

        info = self.engine.lookup_user_info("A")

        self.assertEqual((info.pirate_name, info.email, info.ship_name), ("Jack", "jack@sea.example", "Pearl"))

    def test_lookup_reports_latest_approved_nation(self):
        self.fund("A", "5")

        self.assertEqual(self.engine.lookup_user_info("A").nation_username, "Nation")

    def test_admin_log_is_newest_first(self):
        self.engine.log_admin_action("admin", "Admin", "admin_balance", "Checked balance for A")
        self.engine.log_admin_action("admin", "Admin", "admin_logs", "Viewed logs")

        logs = self.engine.get_admin_logs(10)

        self.assertEqual([log.action for log in logs], ["admin_logs", "admin_balance"])
        with self.assertRaises(InvalidLimit):
            self.engine.get_admin_logs(0)


class InMemoryLedgerEngineTests(LedgerEngineContract, unittest.TestCase):
    def make_store(self):
        return InMemoryLedgerStore()

    def test_store_outage(self):
        self.store.unavailable = True

        self.assertEqual(self.engine.get_pending_deposits(), [])
        self.assertEqual(self.engine.get_pending_withdrawals(), [])
        self.assertEqual(self.engine.get_transactions(5), [])
        with self.assertRaises(StoreUnavailable):
            self.engine.get_balance("A")
        with self.assertRaises(StoreUnavailable):
            self.engine.verify_ledger()
        with self.assertRaises(StoreUnavailable):
            self.engine.add_balance("A", "alice", 1)


    def test_release_and_its_audit_row_commit_together(self):
        self.fund("A", "30")
        withdrawal = self.engine.place_in_escrow("A", "Nation1", 30)

        with mock.patch.object(
            InMemoryLedgerSession, "add_admin_log", side_effect=StoreUnavailable("ledger store is offline")
        ):
            with self.assertRaises(StoreUnavailable):
                self.engine.release_escrow("A", 30, admin_id="42", admin_username="boss")

        self.assertEqual(self.engine.get_balance("A"), Decimal("0"))
        self.assertEqual(self.engine.get_withdrawal(withdrawal.id).amount, Decimal("30"))
        self.assertNotIn("release_escrow", [log.action for log in self.engine.get_admin_logs(10)])
        self.assertTrue(self.engine.verify_ledger())


class SqliteLedgerEngineTests(LedgerEngineContract, unittest.TestCase):
    def make_store(self):
        self.tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmpdir, ignore_errors=True)
        return SqliteLedgerStore(os.path.join(self.tmpdir, "bank.db"))


class ParseAmountTests(unittest.TestCase):
    def test_normalises_to_cents(self):
        self.assertEqual(str(parse_amount(5)), "5.00")
        self.assertEqual(str(parse_amount("0.1")), "0.10")
        self.assertEqual(str(parse_amount(Decimal("12.3"))), "12.30")
        self.assertEqual(str(parse_amount(" 7.5 ")), "7.50")

    def test_rejects_floats_and_sub_cent_values(self):
        for value in (0.1, "0.001", "1e-3", "", "ten"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidAmount):
                    parse_amount(value)


if __name__ == "__main__":
    unittest.main()
