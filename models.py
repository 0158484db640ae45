"""Database models for the clinic queue.

We use SQLModel to define the schema.  The database stores queue entries,
doctors and settings.  Queue entries are patients booked into the queue;
the ``position`` column orders the ongoing ones.  Doctors carry an
``is_active`` flag marking the one currently in charge.  Settings holds
clinic-level configuration such as the admin passcode.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Timestamp read back from the store, as an aware UTC datetime.

    Some drivers return naive values for UTC columns; those are taken as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EntryStatus(str, Enum):
    """Possible statuses for a queue entry."""

    ongoing = "ongoing"
    completed = "completed"
    skipped = "skipped"


class QueueEntry(SQLModel, table=True):
    __tablename__ = "queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    ticket_number: int
    patient_name: str
    position: int = Field(index=True)
    status: EntryStatus = Field(default=EntryStatus.ongoing, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)


class Doctor(SQLModel, table=True):
    __tablename__ = "doctors"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    specialization: Optional[str] = None
    is_active: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)


class Settings(SQLModel, table=True):
    id: Optional[int] = Field(default=1, primary_key=True)
    admin_passcode: str = Field(default="demo")
    clinic_name: str = Field(default="Clinic Queue")
