"""
Skill request writers racing each other. Each test forces the interleaving
by committing a competing write from a second session right before the
first writer's update, the same way the wallet double-spend test does.
"""

from datetime import timedelta

import pytest

from conftest import FakeClock, as_caller
from models import SkillRequest, SkillRequestStatus
from services.skill_request_service import SkillRequestService
from utils.exception_handler import InvalidStateError


def _status(session_factory, request_id):
    check = session_factory()
    try:
        return check.get(SkillRequest, request_id).status
    finally:
        check.close()


@pytest.fixture
def pending(market, alice, guitar):
    return market.requests().send_request(as_caller(alice), guitar.id, "Weekend slot?")


@pytest.fixture
def after_deadline(clock):
    return FakeClock(clock() + timedelta(hours=49))


def _with_competitor(service, competitor):
    """Run competitor once, just before service writes its status change"""
    real_transition = service.transition
    raced = []

    def racing_transition(request, target):
        if not raced:
            raced.append(True)
            competitor()
        return real_transition(request, target)

    service.transition = racing_transition


class TestSweepAgainstReceiver:

    @pytest.mark.parametrize("decision", ["accept_request", "reject_request"])
    def test_sweep_wins_and_decision_fails(self, session_factory, clock, after_deadline, bob, pending, decision):
        first_session = session_factory()
        sweep_session = session_factory()
        try:
            receiver = SkillRequestService(first_session, clock=clock)
            sweeper = SkillRequestService(sweep_session, clock=after_deadline)
            _with_competitor(receiver, sweeper.auto_expire_requests)

            with pytest.raises(InvalidStateError, match="Request already finalized"):
                getattr(receiver, decision)(as_caller(bob), pending.id)
        finally:
            first_session.close()
            sweep_session.close()

        assert _status(session_factory, pending.id) == SkillRequestStatus.EXPIRED.value

    def test_accept_wins_and_sweep_skips(self, session_factory, clock, after_deadline, bob, pending):
        sweep_session = session_factory()
        accept_session = session_factory()
        try:
            sweeper = SkillRequestService(sweep_session, clock=after_deadline)
            receiver = SkillRequestService(accept_session, clock=clock)
            _with_competitor(sweeper, lambda: receiver.accept_request(as_caller(bob), pending.id))

            results = sweeper.auto_expire_requests()
        finally:
            sweep_session.close()
            accept_session.close()

        assert results["scanned"] == 1
        assert results["expired"] == 0
        assert results["skipped"] == 1
        assert _status(session_factory, pending.id) == SkillRequestStatus.ACCEPTED.value

    def test_sweep_wins_over_sender_cancel(self, session_factory, clock, after_deadline, alice, pending):
        first_session = session_factory()
        sweep_session = session_factory()
        try:
            sender = SkillRequestService(first_session, clock=clock)
            sweeper = SkillRequestService(sweep_session, clock=after_deadline)
            _with_competitor(sender, sweeper.auto_expire_requests)

            with pytest.raises(InvalidStateError):
                sender.cancel_request(as_caller(alice), pending.id)
        finally:
            first_session.close()
            sweep_session.close()

        assert _status(session_factory, pending.id) == SkillRequestStatus.EXPIRED.value


class TestConcurrentSend:

    def test_second_send_for_same_skill_is_rejected(self, session_factory, clock, alice, guitar):
        first_session = session_factory()
        second_session = session_factory()
        try:
            competitor = SkillRequestService(second_session, clock=FakeClock(clock()))
            raced = []

            def racing_clock():
                # Competitor commits after our duplicate check, before our insert
                if not raced:
                    raced.append(True)
                    competitor.send_request(as_caller(alice), guitar.id, "Me first")
                return clock()

            first = SkillRequestService(first_session, clock=racing_clock)
            with pytest.raises(InvalidStateError, match="Active request already exists"):
                first.send_request(as_caller(alice), guitar.id, "No, me")
        finally:
            first_session.close()
            second_session.close()

        check = session_factory()
        try:
            open_requests = check.query(SkillRequest).filter(
                SkillRequest.sender_id == alice.id,
                SkillRequest.skill_id == guitar.id,
            ).all()
            assert [r.message for r in open_requests] == ["Me first"]
        finally:
            check.close()
