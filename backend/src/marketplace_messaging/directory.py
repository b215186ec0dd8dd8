from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from sqlalchemy import String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import ROLES, Role


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    name: str
    role: Role


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> UserProfile | None: ...


class PropertyCatalog(Protocol):
    def exists(self, property_id: str) -> bool: ...

    def get_title(self, property_id: str) -> str | None: ...


def _normalize_role(role: str) -> Role:
    normalized = role.strip().lower()
    if normalized not in ROLES:
        raise ValueError(f"unsupported role: {role}")
    return normalized  # type: ignore[return-value]


class InMemoryDirectory:
    """User and property lookups backed by dictionaries (tests and local runs)."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._users: dict[str, UserProfile] = {}
        self._properties: dict[str, str] = {}

    def reset(self) -> None:
        with self._lock:
            self._users.clear()
            self._properties.clear()

    def upsert_user(self, user_id: str, *, name: str, role: str) -> UserProfile:
        profile = UserProfile(user_id=user_id, name=name, role=_normalize_role(role))
        with self._lock:
            self._users[user_id] = profile
        return profile

    def upsert_property(self, property_id: str, *, title: str) -> None:
        with self._lock:
            self._properties[property_id] = title

    def get_user(self, user_id: str) -> UserProfile | None:
        with self._lock:
            return self._users.get(user_id)

    def exists(self, property_id: str) -> bool:
        with self._lock:
            return property_id in self._properties

    def get_title(self, property_id: str) -> str | None:
        with self._lock:
            return self._properties.get(property_id)


class DirectoryBase(DeclarativeBase):
    pass


class _MarketplaceUserRow(DirectoryBase):
    __tablename__ = "marketplace_users"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, index=True)


class _MarketplacePropertyRow(DirectoryBase):
    __tablename__ = "marketplace_properties"

    property_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False)


class SqlAlchemyDirectory:
    """Read access to the marketplace user and property tables."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for DIRECTORY_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DirectoryBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def upsert_user(self, user_id: str, *, name: str, role: str, email: str | None = None) -> UserProfile:
        normalized_role = _normalize_role(role)
        with self._session() as session:
            with session.begin():
                row = session.get(_MarketplaceUserRow, user_id)
                if row is None:
                    session.add(_MarketplaceUserRow(user_id=user_id, name=name, email=email, role=normalized_role))
                else:
                    row.name = name
                    row.role = normalized_role
                    row.email = email or row.email
        return UserProfile(user_id=user_id, name=name, role=normalized_role)

    def upsert_property(self, property_id: str, *, title: str) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_MarketplacePropertyRow, property_id)
                if row is None:
                    session.add(_MarketplacePropertyRow(property_id=property_id, title=title))
                else:
                    row.title = title

    def get_user(self, user_id: str) -> UserProfile | None:
        with self._session() as session:
            row = session.get(_MarketplaceUserRow, user_id)
            if row is None or row.role not in ROLES:
                return None
            return UserProfile(user_id=row.user_id, name=row.name, role=row.role)  # type: ignore[arg-type]

    def exists(self, property_id: str) -> bool:
        with self._session() as session:
            return session.scalar(
                select(_MarketplacePropertyRow.property_id).where(_MarketplacePropertyRow.property_id == property_id)
            ) is not None

    def get_title(self, property_id: str) -> str | None:
        with self._session() as session:
            return session.scalar(
                select(_MarketplacePropertyRow.title).where(_MarketplacePropertyRow.property_id == property_id)
            )


def create_directory(*, backend: str, database_url: str) -> InMemoryDirectory | SqlAlchemyDirectory:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDirectory(database_url)
    if normalized == "inmemory":
        return InMemoryDirectory()
    raise RuntimeError(f"unsupported DIRECTORY_BACKEND: {backend}")
