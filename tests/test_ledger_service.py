"""
Ledger tests: deposits, withdrawals, derived balances, reconciliation and
the read-only transaction queries.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from conftest import as_caller, published_events, slot
from models import TransactionStatus, TransactionType, WalletAccount
from services.notification_service import NotificationEventType
from utils.caller_context import Caller
from utils.exception_handler import (
    InsufficientBalanceError, InvalidRequestError, OperationNotAllowedError,
    ResourceNotFoundError,
)


class TestDepositWithdraw:

    def test_deposit_creates_success_row(self, ledger, notifier, alice):
        tx = ledger.deposit(as_caller(alice), "250.50")

        assert tx.transaction_type == TransactionType.DEPOSIT.value
        assert tx.status == TransactionStatus.SUCCESS.value
        assert tx.payer_id == alice.id and tx.payee_id == alice.id
        assert tx.amount == Decimal("250.50")
        assert tx.currency == "INR"
        assert tx.payment_gateway == "internal" and tx.payment_method == "wallet"
        assert len(tx.transaction_reference) == 36
        assert ledger.get_wallet_balance(alice.id) == Decimal("250.50")
        assert published_events(notifier) == [NotificationEventType.DEPOSIT_SUCCESS]

    def test_references_are_unique(self, ledger, alice):
        first = ledger.deposit(as_caller(alice), 10)
        second = ledger.deposit(as_caller(alice), 10)
        assert first.transaction_reference != second.transaction_reference

    @pytest.mark.parametrize("amount", [0, -5, "-0.01", "abc", "NaN", "Infinity", "-Infinity", "1e30"])
    def test_deposit_rejects_bad_amounts(self, ledger, alice, amount):
        with pytest.raises(InvalidRequestError):
            ledger.deposit(as_caller(alice), amount)

    def test_deposit_for_unknown_user(self, ledger):
        with pytest.raises(ResourceNotFoundError):
            ledger.deposit(Caller.of(777), 10)

    def test_withdraw_within_balance(self, ledger, alice):
        ledger.deposit(as_caller(alice), 100)
        tx = ledger.withdraw(as_caller(alice), "40")

        assert tx.transaction_type == TransactionType.WITHDRAW.value
        assert tx.status == TransactionStatus.SUCCESS.value
        assert ledger.get_wallet_balance(alice.id) == Decimal("60.00")

    def test_withdraw_more_than_balance(self, db, ledger, alice):
        ledger.deposit(as_caller(alice), 100)
        with pytest.raises(InsufficientBalanceError):
            ledger.withdraw(as_caller(alice), "100.01")

        assert ledger.get_by_type_and_status(TransactionType.WITHDRAW, TransactionStatus.SUCCESS) == []
        assert ledger.get_wallet_balance(alice.id) == Decimal("100.00")

    def test_withdraw_rejects_zero(self, ledger, alice):
        with pytest.raises(InvalidRequestError):
            ledger.withdraw(as_caller(alice), 0)

    def test_wallet_snapshot_and_version_follow_writes(self, db, ledger, alice):
        ledger.deposit(as_caller(alice), 100)
        ledger.withdraw(as_caller(alice), 30)

        wallet = db.query(WalletAccount).filter_by(user_id=alice.id).one()
        db.refresh(wallet)
        assert wallet.balance_snapshot == Decimal("70.00")
        assert wallet.version == 3  # created at 1, one CAS per write


class TestDerivedBalance:

    @pytest.fixture
    def mixed_history(self, market, ledger, bookings, clock, alice, bob, guitar, accepted):
        """Deposit, completed booking, refunded booking and a withdrawal"""
        market.fund(alice, "2000.00")

        start, end = slot(day=10, minutes=90)
        first = bookings.create_booking(as_caller(alice), accepted.id, start, end)
        bookings.confirm_booking(first.id, as_caller(bob))
        bookings.start_booking(first.id, as_caller(bob))
        bookings.complete_booking(first.id, as_caller(bob))

        clock.advance(minutes=5)
        piano = market.skill(bob, rate="400.00", title="Piano lessons")
        second_request = market.accepted_request(alice, piano)
        start, end = slot(day=12, minutes=60)
        second = bookings.create_booking(as_caller(alice), second_request.id, start, end)
        bookings.confirm_booking(second.id, as_caller(bob))
        bookings.cancel_booking(second.id, as_caller(alice), "Conflict at work")

        ledger.withdraw(as_caller(alice), "100.00")
        ledger.withdraw(as_caller(bob), "50.00")

    def test_aggregate_matches_fold(self, ledger, alice, bob, mixed_history):
        for user in (alice, bob):
            assert ledger.get_wallet_balance(user.id) == ledger.get_net_wallet_flow(user.id)

    def test_expected_balances(self, ledger, alice, bob, mixed_history):
        # 2000 - 750 (released) - 400 + 400 (refunded) - 100
        assert ledger.get_wallet_balance(alice.id) == Decimal("1150.00")
        # 750 released - 50 withdrawn
        assert ledger.get_wallet_balance(bob.id) == Decimal("700.00")
        assert ledger.get_escrow_held(alice.id) == Decimal("0.00")

    def test_user_without_history(self, ledger, alice):
        assert ledger.get_wallet_balance(alice.id) == Decimal("0.00")
        assert ledger.get_net_wallet_flow(alice.id) == Decimal("0.00")


class TestReconcile:

    def test_consistent_wallet(self, ledger, alice):
        ledger.deposit(as_caller(alice), 80)
        report = ledger.reconcile_wallet(alice.id)
        assert report["consistent"] is True
        assert report["repaired"] is False
        assert report["derived_balance"] == Decimal("80.00")

    def test_drifted_snapshot_is_repaired(self, db, ledger, alice):
        ledger.deposit(as_caller(alice), 80)
        db.execute(
            update(WalletAccount).where(WalletAccount.user_id == alice.id).values(balance_snapshot=Decimal("999.00"))
        )
        db.commit()

        report = ledger.reconcile_wallet(alice.id)
        assert report["snapshot_before"] == Decimal("999.00")
        assert report["drift"] == Decimal("-919.00")
        assert report["repaired"] is True

        wallet = db.query(WalletAccount).filter_by(user_id=alice.id).one()
        db.refresh(wallet)
        assert wallet.balance_snapshot == Decimal("80.00")

    def test_drift_never_changes_solvency(self, db, ledger, alice):
        ledger.deposit(as_caller(alice), 80)
        db.execute(
            update(WalletAccount).where(WalletAccount.user_id == alice.id).values(balance_snapshot=Decimal("999.00"))
        )
        db.commit()
        with pytest.raises(InsufficientBalanceError):
            ledger.withdraw(as_caller(alice), 500)


class TestQueries:

    @pytest.fixture
    def history(self, ledger, alice, bob):
        return {
            "alice_deposit": ledger.deposit(as_caller(alice), 300),
            "bob_deposit": ledger.deposit(as_caller(bob), 40),
            "alice_withdraw": ledger.withdraw(as_caller(alice), 120),
        }

    def test_get_transaction_for_party(self, ledger, alice, history):
        tx = history["alice_deposit"]
        assert ledger.get_transaction(as_caller(alice), tx.id).id == tx.id

    def test_get_transaction_for_outsider(self, ledger, bob, history):
        with pytest.raises(OperationNotAllowedError):
            ledger.get_transaction(as_caller(bob), history["alice_deposit"].id)

    def test_admin_sees_any_transaction(self, ledger, admin, history):
        assert ledger.get_transaction(admin, history["alice_deposit"].id) is not None

    def test_missing_transaction(self, ledger, alice):
        with pytest.raises(ResourceNotFoundError):
            ledger.get_transaction(as_caller(alice), 5555)

    def test_by_reference(self, ledger, alice, history):
        ref = history["alice_withdraw"].transaction_reference
        assert ledger.get_by_reference(as_caller(alice), ref).id == history["alice_withdraw"].id
        with pytest.raises(ResourceNotFoundError):
            ledger.get_by_reference(as_caller(alice), "no-such-reference")

    def test_party_filters(self, ledger, alice, bob, history):
        assert len(ledger.get_user_transactions(alice.id)) == 2
        assert len(ledger.get_by_payer(alice.id)) == 2
        assert len(ledger.get_by_payee(bob.id, TransactionStatus.SUCCESS)) == 1
        assert ledger.get_by_payee(bob.id, TransactionStatus.PENDING) == []
        assert len(ledger.get_by_type_and_status(TransactionType.DEPOSIT, TransactionStatus.SUCCESS)) == 2

    def test_payer_transactions_above(self, ledger, alice, history):
        above = ledger.get_payer_transactions_above(alice.id, 200)
        assert [tx.id for tx in above] == [history["alice_deposit"].id]

    def test_between_dates(self, ledger, alice, history):
        anchor = history["alice_deposit"].created_at
        found = ledger.get_between_dates(alice.id, anchor - timedelta(minutes=5), anchor + timedelta(minutes=5))
        assert len(found) == 2

    def test_between_dates_empty_range(self, ledger, alice, history):
        start = datetime(2001, 1, 1)
        assert ledger.get_between_dates(alice.id, start, start + timedelta(days=1)) == []

    def test_between_dates_validation(self, ledger, alice):
        start = datetime(2025, 1, 1)
        with pytest.raises(InvalidRequestError):
            ledger.get_between_dates(alice.id, None, start)
        with pytest.raises(InvalidRequestError):
            ledger.get_between_dates(alice.id, start, start - timedelta(days=1))

    def test_all_transactions_admin_only(self, ledger, alice, admin, history):
        assert len(ledger.get_all_transactions(admin)) == 3
        with pytest.raises(OperationNotAllowedError):
            ledger.get_all_transactions(as_caller(alice))


class TestMalformedAmounts:

    @pytest.mark.parametrize("amount", ["NaN", "Infinity", Decimal("NaN")])
    def test_withdraw_rejects_non_finite(self, market, ledger, alice, amount):
        market.fund(alice, "50.00")
        with pytest.raises(InvalidRequestError, match="Amount must be a valid number"):
            ledger.withdraw(as_caller(alice), amount)
        assert market.balance(alice) == Decimal("50.00")
