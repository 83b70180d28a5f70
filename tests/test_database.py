"""Commit and rollback behaviour of managed_session"""

import pytest
from sqlalchemy import func, select

from database import managed_session
from models import User


def user_count(session_factory):
    with session_factory() as fresh:
        return fresh.execute(select(func.count(User.id))).scalar_one()


class TestManagedSession:

    def test_commits_on_success(self, session_factory):
        with managed_session(session_factory) as session:
            session.add(User(email="a@example.com", name="A"))

        assert user_count(session_factory) == 1

    def test_rolls_back_and_reraises(self, session_factory):
        with pytest.raises(RuntimeError, match="boom"):
            with managed_session(session_factory) as session:
                session.add(User(email="a@example.com", name="A"))
                session.flush()
                raise RuntimeError("boom")

        assert user_count(session_factory) == 0

    def test_session_is_closed_afterwards(self, session_factory):
        with managed_session(session_factory) as session:
            session.add(User(email="a@example.com", name="A"))

        assert not session.in_transaction()
        assert list(session) == []
