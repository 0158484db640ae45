"""Queue store: engine, sessions and row-level primitives.

Every function takes an open ``Session`` as its first argument.  Writes
commit immediately unless called with ``commit=False``, in which case the
caller owns the transaction.  Any SQLAlchemy failure is rolled back and
re-raised as ``BackendError`` so callers never see driver exceptions.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

import config
from exceptions import BackendError
from models import Doctor, EntryStatus, QueueEntry, Settings

logger = logging.getLogger(__name__)


def make_engine(url: str, **kwargs):
    """Create an engine for ``url``; SQLite connections may cross threads."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, **kwargs)


engine = make_engine(config.DATABASE_URL)


def get_session() -> Iterator[Session]:
    """Yield a session bound to the current engine (FastAPI dependency)."""
    with Session(engine) as session:
        yield session


def _backend_call(fn):
    @functools.wraps(fn)
    def wrapper(session: Session, *args, **kwargs):
        try:
            return fn(session, *args, **kwargs)
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Store call %s failed: %s", fn.__name__, exc)
            raise BackendError(str(exc)) from exc

    return wrapper


def init_db() -> None:
    """Create tables if they do not exist and seed the settings row."""
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        settings = session.get(Settings, 1)
        if settings is None:
            settings = Settings(id=1)
        if config.ADMIN_PASS:
            settings.admin_passcode = config.ADMIN_PASS
        if config.CLINIC_NAME:
            settings.clinic_name = config.CLINIC_NAME
        session.add(settings)
        session.commit()


@_backend_call
def commit(session: Session) -> None:
    session.commit()


# ===== SETTINGS =====

@_backend_call
def get_settings(session: Session) -> Settings:
    settings = session.get(Settings, 1)
    if settings is None:
        settings = Settings(id=1)
        session.add(settings)
        session.commit()
        session.refresh(settings)
    return settings


@_backend_call
def set_admin_pass(session: Session, passcode: str) -> None:
    settings = session.get(Settings, 1) or Settings(id=1)
    settings.admin_passcode = passcode
    session.add(settings)
    session.commit()


# ===== QUEUE =====

@_backend_call
def get_entry(session: Session, entry_id: int) -> Optional[QueueEntry]:
    return session.get(QueueEntry, entry_id)


@_backend_call
def list_entries(session: Session, status: EntryStatus = EntryStatus.ongoing) -> List[QueueEntry]:
    """Entries with ``status`` ordered by position, then id."""
    stmt = (
        select(QueueEntry)
        .where(QueueEntry.status == status)
        .order_by(QueueEntry.position, QueueEntry.id)
    )
    return list(session.exec(stmt).all())


@_backend_call
def max_position(session: Session) -> Optional[int]:
    stmt = select(func.max(QueueEntry.position)).where(QueueEntry.status == EntryStatus.ongoing)
    return session.exec(stmt).one()


@_backend_call
def add_entry(session: Session, entry: QueueEntry) -> QueueEntry:
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return entry


@_backend_call
def set_position(session: Session, entry_id: int, position: int, commit: bool = True) -> int:
    """Write one entry's position.  Returns the number of rows updated."""
    result = session.execute(
        update(QueueEntry).where(QueueEntry.id == entry_id).values(position=position)
    )
    if commit:
        session.commit()
    return result.rowcount


@_backend_call
def set_status(session: Session, entry_id: int, status: EntryStatus) -> int:
    result = session.execute(
        update(QueueEntry).where(QueueEntry.id == entry_id).values(status=status)
    )
    session.commit()
    return result.rowcount


@_backend_call
def delete_entry(session: Session, entry_id: int) -> int:
    result = session.execute(delete(QueueEntry).where(QueueEntry.id == entry_id))
    session.commit()
    return result.rowcount


@_backend_call
def entries_created_between(session: Session, start: datetime, end: datetime) -> List[QueueEntry]:
    stmt = (
        select(QueueEntry)
        .where(QueueEntry.created_at >= start, QueueEntry.created_at <= end)
        .order_by(QueueEntry.created_at)
    )
    return list(session.exec(stmt).all())


# ===== DOCTORS =====

@_backend_call
def get_doctor(session: Session, doctor_id: int) -> Optional[Doctor]:
    return session.get(Doctor, doctor_id)


@_backend_call
def list_doctors(session: Session) -> List[Doctor]:
    return list(session.exec(select(Doctor).order_by(Doctor.name)).all())


@_backend_call
def active_doctors(session: Session) -> List[Doctor]:
    return list(session.exec(select(Doctor).where(Doctor.is_active == True)).all())  # noqa: E712


@_backend_call
def save_doctor(session: Session, doctor: Doctor) -> Doctor:
    session.add(doctor)
    session.commit()
    session.refresh(doctor)
    return doctor


@_backend_call
def delete_doctor(session: Session, doctor_id: int) -> int:
    result = session.execute(delete(Doctor).where(Doctor.id == doctor_id))
    session.commit()
    return result.rowcount


@_backend_call
def clear_active_doctors(session: Session, commit: bool = True) -> int:
    """Unconditional bulk update: no doctor is in charge afterwards."""
    result = session.execute(update(Doctor).values(is_active=False))
    if commit:
        session.commit()
    return result.rowcount


@_backend_call
def activate_doctor(session: Session, doctor_id: int, commit: bool = True) -> int:
    result = session.execute(
        update(Doctor).where(Doctor.id == doctor_id).values(is_active=True)
    )
    if commit:
        session.commit()
    return result.rowcount
