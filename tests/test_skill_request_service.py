"""Skill request gate: sending, receiver decisions, cancellation and lookups"""

from datetime import timedelta

import pytest

from conftest import as_caller, slot
from models import SkillRequestStatus
from utils.caller_context import Caller
from utils.exception_handler import (
    InvalidStateError, OperationNotAllowedError, ResourceNotFoundError,
)


@pytest.fixture
def requests(market):
    return market.requests()


@pytest.fixture
def pending(requests, alice, guitar):
    return requests.send_request(as_caller(alice), guitar.id, "Could you teach me barre chords?")


class TestSendRequest:

    def test_creates_pending_request_with_48h_expiry(self, clock, pending, alice, bob, guitar):
        assert pending.status == SkillRequestStatus.PENDING.value
        assert pending.sender_id == alice.id
        assert pending.receiver_id == bob.id
        assert pending.skill_id == guitar.id
        assert pending.expires_at == clock() + timedelta(hours=48)

    def test_cannot_request_own_skill(self, requests, bob, guitar):
        with pytest.raises(InvalidStateError, match="You cannot send request to yourself"):
            requests.send_request(as_caller(bob), guitar.id, "Hi me")

    def test_unknown_skill(self, requests, alice):
        with pytest.raises(ResourceNotFoundError, match="Skill not found"):
            requests.send_request(as_caller(alice), 4040, None)

    def test_inactive_skill(self, market, requests, alice, bob):
        retired = market.skill(bob, title="Retired skill", active=False)
        with pytest.raises(ResourceNotFoundError):
            requests.send_request(as_caller(alice), retired.id, None)

    def test_unknown_sender(self, requests, guitar):
        with pytest.raises(ResourceNotFoundError, match="Sender not found"):
            requests.send_request(Caller.of(31337), guitar.id, None)

    def test_duplicate_active_request(self, requests, alice, guitar, pending):
        with pytest.raises(InvalidStateError, match="Active request already exists for this skill"):
            requests.send_request(as_caller(alice), guitar.id, "Again")

    def test_duplicate_while_accepted(self, requests, alice, bob, guitar, pending):
        requests.accept_request(as_caller(bob), pending.id)
        with pytest.raises(InvalidStateError):
            requests.send_request(as_caller(alice), guitar.id, "Again")

    def test_new_request_allowed_after_rejection(self, requests, alice, bob, guitar, pending):
        requests.reject_request(as_caller(bob), pending.id)
        again = requests.send_request(as_caller(alice), guitar.id, "Second try")
        assert again.id != pending.id

    def test_message_length_limit(self, requests, alice, guitar):
        with pytest.raises(InvalidStateError):
            requests.send_request(as_caller(alice), guitar.id, "x" * 501)


class TestReceiverDecisions:

    def test_accept(self, requests, bob, pending):
        accepted = requests.accept_request(as_caller(bob), pending.id)
        assert accepted.status == SkillRequestStatus.ACCEPTED.value

    def test_reject(self, requests, bob, pending):
        rejected = requests.reject_request(as_caller(bob), pending.id)
        assert rejected.status == SkillRequestStatus.REJECTED.value

    def test_only_receiver_decides(self, requests, alice, pending):
        with pytest.raises(OperationNotAllowedError):
            requests.accept_request(as_caller(alice), pending.id)
        with pytest.raises(OperationNotAllowedError):
            requests.reject_request(as_caller(alice), pending.id)

    def test_accept_twice(self, requests, bob, pending):
        requests.accept_request(as_caller(bob), pending.id)
        with pytest.raises(OperationNotAllowedError, match="Only pending requests"):
            requests.accept_request(as_caller(bob), pending.id)

    @pytest.mark.parametrize("finalize", ["reject", "cancel"])
    def test_finalized_request_is_frozen(self, requests, alice, bob, pending, finalize):
        if finalize == "reject":
            requests.reject_request(as_caller(bob), pending.id)
        else:
            requests.cancel_request(as_caller(alice), pending.id)

        with pytest.raises(InvalidStateError, match="Request already finalized"):
            requests.accept_request(as_caller(bob), pending.id)

    def test_unknown_request(self, requests, bob):
        with pytest.raises(ResourceNotFoundError, match="Request not found"):
            requests.accept_request(as_caller(bob), 777)


class TestCancelAndComplete:

    def test_sender_cancels_pending(self, requests, alice, pending):
        assert requests.cancel_request(as_caller(alice), pending.id).status == SkillRequestStatus.CANCELLED.value

    def test_receiver_cannot_cancel(self, requests, bob, pending):
        with pytest.raises(OperationNotAllowedError):
            requests.cancel_request(as_caller(bob), pending.id)

    def test_accepted_request_cannot_be_cancelled(self, requests, alice, bob, pending):
        requests.accept_request(as_caller(bob), pending.id)
        with pytest.raises(OperationNotAllowedError, match="Only pending requests can be cancelled"):
            requests.cancel_request(as_caller(alice), pending.id)

    def test_booked_request_cannot_be_cancelled(self, bookings, requests, alice, accepted):
        start, end = slot()
        bookings.create_booking(as_caller(alice), accepted.id, start, end)
        with pytest.raises(OperationNotAllowedError, match="Cannot cancel request after booking is created"):
            requests.cancel_request(as_caller(alice), accepted.id)

    def test_mark_completed_from_accepted(self, requests, alice, bob, pending):
        requests.accept_request(as_caller(bob), pending.id)
        done = requests.mark_completed(as_caller(alice), pending.id)
        assert done.status == SkillRequestStatus.COMPLETED.value

    def test_mark_completed_requires_accepted(self, requests, bob, pending):
        with pytest.raises(OperationNotAllowedError):
            requests.mark_completed(as_caller(bob), pending.id)

    def test_outsider_cannot_mark_completed(self, market, requests, bob, pending):
        requests.accept_request(as_caller(bob), pending.id)
        carol = market.user("Carol")
        with pytest.raises(OperationNotAllowedError):
            requests.mark_completed(as_caller(carol), pending.id)


class TestLookups:

    def test_sent_and_received(self, requests, alice, bob, pending):
        assert [r.id for r in requests.my_sent_requests(as_caller(alice))] == [pending.id]
        assert [r.id for r in requests.my_received_requests(as_caller(bob))] == [pending.id]
        assert requests.my_sent_requests(as_caller(bob)) == []

    def test_get_request_participants_only(self, market, requests, alice, bob, admin, pending):
        assert requests.get_request(as_caller(alice), pending.id).id == pending.id
        assert requests.get_request(as_caller(bob), pending.id).id == pending.id
        assert requests.get_request(admin, pending.id).id == pending.id

        carol = market.user("Carol")
        with pytest.raises(OperationNotAllowedError):
            requests.get_request(as_caller(carol), pending.id)
