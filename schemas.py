"""Pydantic schemas for requests and responses.

Queue entries and doctors are returned as their SQLModel rows; the models
here cover request bodies and the stats rows.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel

from models import EntryStatus


class PatientCreate(BaseModel):
    patient_name: str


class DoctorCreate(BaseModel):
    name: str
    specialization: Optional[str] = None


class ActionRequest(BaseModel):
    passcode: str
    action: Literal["proceed", "skip", "done", "delete"]
    entry_id: int


class QueueEntryRead(BaseModel):
    id: int
    ticket_number: int
    patient_name: str
    position: int
    status: EntryStatus
    created_at: datetime


class DoctorRead(BaseModel):
    id: int
    name: str
    specialization: Optional[str] = None
    is_active: bool
    created_at: datetime


class DailyPoint(BaseModel):
    date: str
    total: int = 0
    ongoing: int = 0
    completed: int = 0
    skipped: int = 0


class StatsResponse(BaseModel):
    from_date: str
    to_date: str
    days: List[DailyPoint]
    total: int
    ongoing: int
    completed: int
    skipped: int
