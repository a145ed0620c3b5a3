import unittest
from decimal import Decimal

from application import services
from application.ledger import LedgerEngine
from application.services import ExternalContext
from domain.models import LedgerPolicy, RequestStatus
from fakes import InMemoryLedgerStore


class ApplicationServicesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryLedgerStore()
        self.engine = LedgerEngine(self.store)
        self.ctx = ExternalContext(provider="discord", user_id="12345", username="john")
        self.other = ExternalContext(provider="discord", user_id="67890", username="jane")
        self.admin = ExternalContext(provider="discord", user_id="1", username="boss")

    def fund(self, ctx: ExternalContext, amount: str) -> None:
        result = services.request_deposit(ctx, "Atlantis", amount, "https://receipt", self.engine)
        self.assertTrue(result.success)
        request = self.engine.get_user_deposits(ctx.user_id)[0]
        self.assertTrue(services.decide_deposit(self.admin, request.id, True, self.engine).success)

    def test_check_balance_of_new_user(self):
        result = services.check_balance(self.ctx, self.engine)
        self.assertTrue(result.success)
        self.assertIn("0.00 NS", result.message)

    def test_currency_label_and_thousands_separator(self):
        self.engine.add_balance(self.ctx.user_id, self.ctx.username, "1234.5")
        result = services.check_balance(self.ctx, self.engine, currency="DB")
        self.assertIn("1,234.50 DB", result.message)

    def test_transfer_notifies_both_parties(self):
        self.fund(self.ctx, "50")

        result = services.transfer(self.ctx, self.other.user_id, self.other.username, "30", self.engine)

        self.assertTrue(result.success)
        self.assertEqual([n.user_id for n in result.notifications], ["12345", "67890"])
        self.assertIn("30.00 NS", result.notifications[1].text)
        self.assertEqual(self.store.balance_of("12345"), Decimal("20"))
        self.assertEqual(self.store.balance_of("67890"), Decimal("30"))

    def test_transfer_with_insufficient_funds(self):
        result = services.transfer(self.ctx, self.other.user_id, self.other.username, "1", self.engine)

        self.assertFalse(result.success)
        self.assertIn("Insufficient funds", result.error_message)
        self.assertEqual(result.notifications, [])

    def test_transfer_with_bad_amount(self):
        result = services.transfer(self.ctx, self.other.user_id, self.other.username, "lots", self.engine)
        self.assertFalse(result.success)
        self.assertIn("Invalid amount", result.error_message)

    def test_deposit_needs_receipt_and_nation(self):
        no_receipt = services.request_deposit(self.ctx, "Atlantis", "10", None, self.engine)
        no_nation = services.request_deposit(self.ctx, "", "10", "https://receipt", self.engine)

        self.assertFalse(no_receipt.success)
        self.assertIn("receipt", no_receipt.error_message)
        self.assertFalse(no_nation.success)
        self.assertEqual(self.engine.get_pending_deposits(), [])

    def test_deposit_approval_notifies_requester(self):
        services.request_deposit(self.ctx, "Atlantis", "25", "https://receipt", self.engine)
        request = self.engine.get_pending_deposits()[0]

        result = services.decide_deposit(self.admin, request.id, True, self.engine)

        self.assertTrue(result.success)
        self.assertEqual(result.notifications[0].user_id, "12345")
        self.assertIn("approved", result.notifications[0].text)
        self.assertEqual(self.store.balance_of("12345"), Decimal("25"))
        self.assertEqual(self.engine.get_admin_logs(1)[0].admin_id, "1")

    def test_deposit_decision_twice_fails(self):
        services.request_deposit(self.ctx, "Atlantis", "25", "https://receipt", self.engine)
        request = self.engine.get_pending_deposits()[0]

        self.assertTrue(services.decide_deposit(self.admin, request.id, False, self.engine).success)
        again = services.decide_deposit(self.admin, request.id, True, self.engine)

        self.assertFalse(again.success)
        self.assertEqual(self.store.balance_of("12345"), Decimal("0"))

    def test_unknown_deposit_request(self):
        result = services.decide_deposit(self.admin, 42, True, self.engine)
        self.assertFalse(result.success)
        self.assertIn("#42", result.error_message)

    def test_withdrawal_is_escrowed_and_approved(self):
        self.fund(self.ctx, "40")

        placed = services.request_withdrawal(self.ctx, "Atlantis", "40", self.engine)
        self.assertTrue(placed.success)
        self.assertEqual(self.store.balance_of("12345"), Decimal("0"))

        withdrawal = self.engine.get_pending_withdrawals()[0]
        result = services.decide_withdrawal(self.admin, withdrawal.id, True, self.engine)

        self.assertTrue(result.success)
        self.assertIn("approved", result.notifications[0].text)
        self.assertEqual(self.engine.get_withdrawal(withdrawal.id).status, RequestStatus.APPROVED)
        self.assertTrue(services.verify_ledger(self.engine).success)

    def test_denied_withdrawal_returns_funds(self):
        self.fund(self.ctx, "40")
        services.request_withdrawal(self.ctx, "Atlantis", "15", self.engine)
        withdrawal = self.engine.get_pending_withdrawals()[0]

        result = services.decide_withdrawal(self.admin, withdrawal.id, False, self.engine)

        self.assertTrue(result.success)
        self.assertIn("returned to your balance", result.notifications[0].text)
        self.assertEqual(self.store.balance_of("12345"), Decimal("40"))

    def test_denied_withdrawal_kept_in_escrow_then_released(self):
        engine = LedgerEngine(self.store, LedgerPolicy(release_escrow_on_reject=False))
        engine.add_balance(self.ctx.user_id, self.ctx.username, "15")
        services.request_withdrawal(self.ctx, "Atlantis", "15", engine)
        withdrawal = engine.get_pending_withdrawals()[0]

        denied = services.decide_withdrawal(self.admin, withdrawal.id, False, engine)
        self.assertIn("remain in escrow", denied.message)
        self.assertEqual(self.store.balance_of("12345"), Decimal("0"))

        released = services.release_escrow(self.admin, self.ctx.user_id, "15", engine)

        self.assertTrue(released.success)
        self.assertIn("15.00 NS", released.message)
        self.assertEqual(self.store.balance_of("12345"), Decimal("15"))
        log = engine.get_admin_logs(1)[0]
        self.assertEqual((log.action, log.admin_id), ("release_escrow", "1"))

    def test_withdrawal_over_balance(self):
        result = services.request_withdrawal(self.ctx, "Atlantis", "5", self.engine)
        self.assertFalse(result.success)
        self.assertEqual(self.engine.get_pending_withdrawals(), [])

    def test_mini_statement(self):
        self.assertEqual(services.mini_statement(self.ctx, self.engine).message, "No transactions found.")

        for _ in range(7):
            self.engine.add_balance(self.ctx.user_id, self.ctx.username, "1")
        result = services.mini_statement(self.ctx, self.engine)

        lines = result.message.splitlines()
        self.assertEqual(len(lines), 1 + services.STATEMENT_SIZE)
        self.assertIn("deposit", lines[1])

    def test_verify_ledger_reports_mismatch(self):
        self.fund(self.ctx, "10")
        self.assertTrue(services.admin_set_balance(self.admin, "12345", "john", "99", self.engine).success)

        result = services.verify_ledger(self.engine)

        self.assertFalse(result.success)
        self.assertIn("mismatch", result.error_message)

    def test_admin_actions_are_logged(self):
        services.admin_check_balance(self.admin, "12345", "john", self.engine)
        services.lookup_info(self.admin, "12345", self.engine)

        result = services.recent_admin_logs(self.engine)

        self.assertTrue(result.success)
        actions = [log.action for log in self.engine.get_admin_logs(10)]
        self.assertEqual(actions, ["lookup_info", "admin_balance"])

    def test_lookup_info(self):
        missing = services.lookup_info(self.admin, "12345", self.engine)
        self.assertFalse(missing.success)
        self.assertEqual(missing.error_message, "No information found for that user.")

        services.update_info(self.ctx, self.engine, pirate_name="Blackbeard")
        found = services.lookup_info(self.admin, "12345", self.engine)

        self.assertTrue(found.success)
        self.assertIn("Pirate name: Blackbeard", found.message)
        self.assertIn("Email: Not set", found.message)

    def test_store_outage_is_reported_politely(self):
        self.store.unavailable = True

        result = services.check_balance(self.ctx, self.engine)

        self.assertFalse(result.success)
        self.assertIn("temporarily unavailable", result.error_message)
        self.assertEqual(services.list_pending_deposits(self.engine).message, "No pending deposit requests found.")


if __name__ == "__main__":
    unittest.main()
