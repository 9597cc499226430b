"""Persistence and SQLModel definitions for the KidGate web frontend."""
from __future__ import annotations

import sqlite3
from datetime import date, datetime
from typing import List, Optional

from sqlmodel import Field, Session, SQLModel, create_engine, select

from ..exceptions import ChildNotFoundError
from .config import SQLITE_FILE_NAME

# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
engine = create_engine(
    f"sqlite:///{SQLITE_FILE_NAME}",
    echo=False,
    connect_args={"check_same_thread": False},
)

# Ensure fresh metadata when re-importing in test contexts.
SQLModel.metadata.clear()


class ChildProfile(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str
    avatar_url: Optional[str] = None
    parent_user_id: str = ""
    pin_hash: Optional[str] = None
    login_key: Optional[str] = Field(default=None, index=True, unique=True)
    star_balance: int = 0
    screen_time_balance: int = 0
    is_teen_mode: bool = False
    can_reconcile_transactions: bool = False
    can_add_external_income: bool = False
    auto_graduation_date: Optional[date] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
def new_session() -> Session:
    return Session(engine, expire_on_commit=False)


def get_child(child_id: str) -> Optional[ChildProfile]:
    with new_session() as session:
        return session.get(ChildProfile, child_id)


def find_child_by_login_key(login_key: str) -> Optional[ChildProfile]:
    normalized = (login_key or "").upper()
    with new_session() as session:
        return session.exec(select(ChildProfile).where(ChildProfile.login_key == normalized)).first()


def list_children(parent_user_id: str) -> List[ChildProfile]:
    with new_session() as session:
        query = select(ChildProfile).where(ChildProfile.parent_user_id == parent_user_id).order_by(ChildProfile.name)
        return list(session.exec(query).all())


def save_child(child: ChildProfile) -> ChildProfile:
    with new_session() as session:
        child.updated_at = datetime.utcnow()
        session.add(child)
        session.commit()
        session.refresh(child)
        return child


def update_pin_hash(child_id: str, pin_hash: str) -> ChildProfile:
    with new_session() as session:
        child = session.get(ChildProfile, child_id)
        if child is None:
            raise ChildNotFoundError(f"Unknown child profile '{child_id}'.")
        child.pin_hash = pin_hash
        child.updated_at = datetime.utcnow()
        session.add(child)
        session.commit()
        session.refresh(child)
        return child


# ---------------------------------------------------------------------------
# Database initialisation & migrations
# ---------------------------------------------------------------------------
def create_db_and_tables() -> None:
    SQLModel.metadata.create_all(engine)


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cur = conn.execute(f"PRAGMA table_info({table});")
    return any(row[1] == column for row in cur.fetchall())


def run_migrations() -> None:
    raw = sqlite3.connect(SQLITE_FILE_NAME)
    try:
        if not _column_exists(raw, "childprofile", "login_key"):
            raw.execute("ALTER TABLE childprofile ADD COLUMN login_key TEXT;")
            raw.execute("CREATE UNIQUE INDEX IF NOT EXISTS ix_childprofile_login_key ON childprofile (login_key);")
        if not _column_exists(raw, "childprofile", "is_teen_mode"):
            raw.execute("ALTER TABLE childprofile ADD COLUMN is_teen_mode BOOLEAN DEFAULT 0;")
        if not _column_exists(raw, "childprofile", "can_reconcile_transactions"):
            raw.execute("ALTER TABLE childprofile ADD COLUMN can_reconcile_transactions BOOLEAN DEFAULT 0;")
        if not _column_exists(raw, "childprofile", "can_add_external_income"):
            raw.execute("ALTER TABLE childprofile ADD COLUMN can_add_external_income BOOLEAN DEFAULT 0;")
        if not _column_exists(raw, "childprofile", "auto_graduation_date"):
            raw.execute("ALTER TABLE childprofile ADD COLUMN auto_graduation_date TEXT;")
        raw.commit()
    finally:
        raw.close()


create_db_and_tables()
run_migrations()

__all__ = [
    "ChildProfile",
    "create_db_and_tables",
    "engine",
    "find_child_by_login_key",
    "get_child",
    "list_children",
    "new_session",
    "run_migrations",
    "save_child",
    "update_pin_hash",
]
