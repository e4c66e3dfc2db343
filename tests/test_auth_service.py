"""Account registration and the first-admin rule."""

from datetime import datetime, timedelta, timezone

from sqlmodel import Session

from watermeter.models.user import User
from watermeter.services import access, auth_service


def _user(db, email: str, created_at: datetime) -> User:
    with Session(db) as session:
        user = User(email=email, password_hash="x", role=access.USER, created_at=created_at)
        session.add(user)
        session.commit()
        session.refresh(user)
        return user


def _role(db, user_id: str) -> str:
    with Session(db) as session:
        return session.get(User, user_id).role


def test_first_registration_becomes_admin(db):
    with Session(db) as session:
        first = auth_service.register_user("a@example.com", "secret1", "A", session).id
        second = auth_service.register_user("b@example.com", "secret1", "B", session).id
    assert _role(db, first) == access.ADMIN
    assert _role(db, second) == access.USER


def test_only_the_oldest_account_is_promoted(db):
    # Two registrations committed before either tried to promote itself
    now = datetime.now(timezone.utc)
    early = _user(db, "early@example.com", now - timedelta(seconds=1))
    late = _user(db, "late@example.com", now)

    with Session(db) as session:
        assert auth_service.promote_if_first(late.id, session) is False
        assert auth_service.promote_if_first(early.id, session) is True
        assert auth_service.promote_if_first(early.id, session) is False

    assert _role(db, early.id) == access.ADMIN
    assert _role(db, late.id) == access.USER


def test_no_promotion_once_an_admin_exists(db):
    now = datetime.now(timezone.utc)
    oldest = _user(db, "oldest@example.com", now - timedelta(seconds=1))
    with Session(db) as session:
        boss = User(email="boss@example.com", password_hash="x", role=access.SUPER_ADMIN, created_at=now)
        session.add(boss)
        session.commit()

    with Session(db) as session:
        assert auth_service.promote_if_first(oldest.id, session) is False
    assert _role(db, oldest.id) == access.USER
