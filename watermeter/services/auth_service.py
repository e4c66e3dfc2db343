"""Authentication business logic: registration, login and API keys."""

import logging
from datetime import timedelta

from sqlalchemy import update
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from watermeter.models.user import ApiKey, User
from watermeter.services import access
from watermeter.utils.dates import as_utc, utcnow
from watermeter.utils.security import (
    create_access_token,
    generate_api_key,
    hash_password,
    hash_token,
    verify_password,
)

logger = logging.getLogger(__name__)


def register_user(email: str, password: str, name: str, session: Session) -> User:
    """Create a user account. The very first account becomes an admin.

    Raises ValueError if the email is taken.
    """
    email = email.strip().lower()
    existing = session.exec(select(User).where(User.email == email)).first()
    if existing:
        raise ValueError("Email is already registered")

    user = User(
        email=email,
        name=name,
        password_hash=hash_password(password),
        role=access.USER,
    )
    session.add(user)
    session.commit()
    promote_if_first(user.id, session)
    session.refresh(user)
    logger.info("Registered user %s with role %s", user.id, user.role)
    return user


def promote_if_first(user_id: str, session: Session) -> bool:
    """Make ``user_id`` ADMIN if it is the oldest account and no admin exists yet.

    A single conditional UPDATE, so concurrent first registrations cannot
    both win.
    """
    # Aliases keep the subqueries from correlating with the row being updated
    others = aliased(User)
    admins = aliased(User)
    oldest = (
        select(others.id)
        .order_by(others.created_at, others.id)
        .limit(1)
        .scalar_subquery()
    )
    admin_exists = select(admins.id).where(admins.role.in_([access.ADMIN, access.SUPER_ADMIN])).exists()
    result = session.connection().execute(
        update(User)
        .where(col(User.id) == user_id, col(User.id) == oldest, ~admin_exists)
        .values(role=access.ADMIN)
    )
    session.commit()
    return result.rowcount == 1


def login(email: str, password: str, session: Session) -> tuple[User, str]:
    """Verify credentials and issue an access token. Raises ValueError on failure."""
    user = session.exec(select(User).where(User.email == email.strip().lower())).first()
    if not user or not verify_password(password, user.password_hash):
        raise ValueError("Invalid email or password")
    if not user.is_active:
        raise ValueError("User account is inactive")
    return user, create_access_token(user.id, user.role)


def set_role(user_id: str, role: str, session: Session) -> User:
    if role not in access.ROLES:
        raise ValueError(f"Unknown role: {role}")
    user = session.get(User, user_id)
    if not user:
        raise ValueError("User not found")
    user.role = role
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


# --- API keys ---

def create_api_key(
    user: User,
    name: str,
    session: Session,
    expires_in_days: int | None = None,
) -> tuple[ApiKey, str]:
    """Create an API key. The plain key is only ever returned here."""
    plain = generate_api_key()
    expires_at = utcnow() + timedelta(days=expires_in_days) if expires_in_days else None
    api_key = ApiKey(
        user_id=user.id,
        name=name,
        key_hash=hash_token(plain),
        key_prefix=plain[:10],
        expires_at=expires_at,
    )
    session.add(api_key)
    session.commit()
    session.refresh(api_key)
    return api_key, plain


def list_api_keys(user: User, session: Session) -> list[ApiKey]:
    query = select(ApiKey).order_by(col(ApiKey.created_at).desc())
    if not access.is_admin(user.role):
        query = query.where(ApiKey.user_id == user.id)
    return list(session.exec(query).all())


def revoke_api_key(key_id: str, user: User, session: Session) -> ApiKey:
    api_key = session.get(ApiKey, key_id)
    if not api_key or (api_key.user_id != user.id and not access.is_admin(user.role)):
        raise ValueError("API key not found")
    api_key.is_active = False
    session.add(api_key)
    session.commit()
    session.refresh(api_key)
    return api_key


def resolve_api_key(plain: str, session: Session) -> User:
    """Map a presented API key to its active owner. Raises ValueError otherwise."""
    api_key = session.exec(select(ApiKey).where(ApiKey.key_hash == hash_token(plain))).first()
    if not api_key or not api_key.is_active:
        raise ValueError("Invalid or expired API key")

    expires_at = as_utc(api_key.expires_at)
    if expires_at is not None and expires_at <= utcnow():
        raise ValueError("Invalid or expired API key")

    user = session.get(User, api_key.user_id)
    if not user or not user.is_active:
        raise ValueError("User account is inactive")

    api_key.last_used_at = utcnow()
    session.add(api_key)
    session.commit()
    return user
