"""
Shared fixtures: a throwaway SQLite database per test, a controllable clock,
a mocked notification sink and a retry policy that records its sleeps.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import sessionmaker

from database import build_engine
from models import Base, Skill, User
from services.booking_service import BookingService, EscrowFailurePolicy
from services.escrow_service import EscrowService
from services.ledger_service import LedgerService
from services.notification_service import NotificationService
from services.skill_request_service import SkillRequestService
from utils.caller_context import Caller, ROLE_ADMIN, ROLE_USER
from utils.optimistic_locking import RetryPolicy


class FakeClock:
    """Deterministic replacement for get_naive_utc_now"""

    def __init__(self, start: datetime = datetime(2025, 1, 6, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def slot(day: int = 10, hour: int = 10, minute: int = 0, minutes: int = 60):
    """(start, end) on a day in January 2025"""
    start = datetime(2025, 1, day, hour, minute)
    return start, start + timedelta(minutes=minutes)


class Marketplace:
    """Builds users, skills, accepted requests and wallet funding for a test"""

    def __init__(self, session, clock, notifier, retry_policy):
        self.session = session
        self.clock = clock
        self.notifier = notifier
        self.retry_policy = retry_policy
        self._seq = 0

    def user(self, name: str) -> User:
        self._seq += 1
        user = User(email=f"{name.lower()}{self._seq}@example.com", name=name, is_active=True)
        self.session.add(user)
        self.session.commit()
        return user

    def skill(self, owner: User, rate: str = "500.00", title: str = "Guitar lessons", active: bool = True) -> Skill:
        skill = Skill(owner_id=owner.id, title=title, hourly_rate=Decimal(rate), is_active=active)
        self.session.add(skill)
        self.session.commit()
        return skill

    def requests(self) -> SkillRequestService:
        return SkillRequestService(self.session, clock=self.clock)

    def accepted_request(self, sender: User, skill: Skill):
        service = self.requests()
        request = service.send_request(Caller.of(sender.id), skill.id, "Can we do a session?")
        return service.accept_request(Caller.of(skill.owner_id), request.id)

    def ledger(self) -> LedgerService:
        return LedgerService(self.session, retry_policy=self.retry_policy, notifier=self.notifier)

    def fund(self, user: User, amount: str):
        return self.ledger().deposit(Caller.of(user.id), Decimal(amount))

    def balance(self, user: User) -> Decimal:
        return self.ledger().get_wallet_balance(user.id)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'skillswap_test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return MagicMock(spec=NotificationService)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def retry_policy(sleeps):
    return RetryPolicy(max_attempts=3, retry_delay=0.05, sleep=sleeps.append)


@pytest.fixture
def market(db, clock, notifier, retry_policy):
    return Marketplace(db, clock, notifier, retry_policy)


@pytest.fixture
def ledger(db, retry_policy, notifier):
    return LedgerService(db, retry_policy=retry_policy, notifier=notifier)


@pytest.fixture
def escrow(db, ledger, retry_policy, notifier, clock):
    return EscrowService(db, ledger=ledger, retry_policy=retry_policy, notifier=notifier, clock=clock)


@pytest.fixture
def make_booking_service(db, escrow, notifier, clock):
    def _make(policy: EscrowFailurePolicy = EscrowFailurePolicy.ROLLBACK, cooldown_seconds: int = 60):
        return BookingService(
            db,
            escrow=escrow,
            notifier=notifier,
            clock=clock,
            escrow_failure_policy=policy,
            cooldown_seconds=cooldown_seconds,
        )
    return _make


@pytest.fixture
def bookings(make_booking_service):
    return make_booking_service()


@pytest.fixture
def alice(market):
    """Learner / requester"""
    return market.user("Alice")


@pytest.fixture
def bob(market):
    """Skill owner / provider"""
    return market.user("Bob")


@pytest.fixture
def guitar(market, bob):
    return market.skill(bob, rate="500.00")


@pytest.fixture
def accepted(market, alice, guitar):
    return market.accepted_request(alice, guitar)


@pytest.fixture
def admin():
    return Caller.of(9999, [ROLE_USER, ROLE_ADMIN])


def as_caller(user: User) -> Caller:
    return Caller.of(user.id)


def published_events(notifier):
    return [c.args[0].event_type for c in notifier.publish.call_args_list]
