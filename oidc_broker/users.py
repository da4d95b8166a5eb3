"""
Local user lookup/creation keyed by upstream identity and email.
UserLookup is the seam the orchestrator depends on; SqlUserLookup is the
SQLAlchemy-backed implementation used by the app.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from oidc_broker.errors import AccountConflictError
from oidc_broker.models import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalUser:
    id: int
    email: str
    name: str
    external_id: str | None = None

    def to_dict(self) -> dict:
        return {"id": self.id, "email": self.email, "name": self.name}


class UserLookup:
    def find_by_external_id(self, external_id: str) -> LocalUser | None:
        raise NotImplementedError

    def find_by_email(self, email: str) -> LocalUser | None:
        raise NotImplementedError

    def find_by_id(self, user_id: int) -> LocalUser | None:
        raise NotImplementedError

    def create(self, *, external_id: str, email: str, name: str) -> LocalUser:
        raise NotImplementedError

    def update_name(self, user_id: int, name: str) -> LocalUser | None:
        raise NotImplementedError


def _to_local(user: User | None) -> LocalUser | None:
    if user is None:
        return None
    return LocalUser(id=user.id, email=user.email, name=user.name or "", external_id=user.external_id)


class SqlUserLookup(UserLookup):
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def find_by_external_id(self, external_id: str) -> LocalUser | None:
        with self._session_factory() as db:
            return _to_local(db.execute(select(User).where(User.external_id == external_id)).scalar_one_or_none())

    def find_by_email(self, email: str) -> LocalUser | None:
        with self._session_factory() as db:
            return _to_local(db.execute(select(User).where(User.email == email)).scalar_one_or_none())

    def find_by_id(self, user_id: int) -> LocalUser | None:
        with self._session_factory() as db:
            return _to_local(db.get(User, user_id))

    def create(self, *, external_id: str, email: str, name: str) -> LocalUser:
        with self._session_factory() as db:
            user = User(external_id=external_id, email=email, name=name or "")
            db.add(user)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                # A concurrent first sign-in of the same upstream identity won the insert
                existing = self.find_by_external_id(external_id) if external_id else None
                if existing is not None:
                    return existing
                raise AccountConflictError(f"User with email {email} already exists") from e
            db.refresh(user)
            logger.info("Created user id=%s", user.id)
            return _to_local(user)

    def update_name(self, user_id: int, name: str) -> LocalUser | None:
        with self._session_factory() as db:
            user = db.get(User, user_id)
            if user is None:
                return None
            user.name = name
            db.commit()
            db.refresh(user)
            return _to_local(user)


def resolve_user(users: UserLookup, *, external_id: str, email: str, name: str) -> LocalUser:
    """
    Find or create the local user for an upstream identity.

    The upstream id is the primary key for matching. When it is unknown, an
    email already owned by another account is a conflict (raised, never
    merged or overwritten). For known users only the display name is refreshed;
    the originally registered email is kept.
    """
    user = users.find_by_external_id(external_id)
    if user is None:
        if users.find_by_email(email) is not None:
            raise AccountConflictError(
                "An account with this email already exists. Please sign in with the original method used for this email."
            )
        return users.create(external_id=external_id, email=email, name=name)
    if name and user.name != name:
        updated = users.update_name(user.id, name)
        if updated is not None:
            return updated
    return user
