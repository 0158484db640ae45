"""Queue business logic: position reconciliation, doctor roster and stats.

All operations accept an open ``sqlmodel.Session`` and go through the row
primitives in ``store``.  Positions of ongoing entries are kept as a dense
1..n sequence on a best-effort basis: insert appends at ``max + 1``, proceed
renumbers the whole ongoing set, skip/delete leave gaps behind.

Multi-row writes (proceed, set_in_charge) are applied one statement at a
time and are not rolled back when a later statement fails, unless
``config.ATOMIC_UPDATES`` is set.  Redis is optional and used only to cache
the public board and to rate limit public bookings.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

import redis
from sqlmodel import Session

import config
import store
from exceptions import (
    BackendError,
    NotFoundError,
    PartialFailure,
    ValidationError,
    ZeroActiveDoctorError,
)
from models import Doctor, EntryStatus, QueueEntry, as_utc
from schemas import DailyPoint

logger = logging.getLogger(__name__)

BOARD_CACHE_KEY = "clinic:board"

# Redis connection
_redis_client = None


def get_redis() -> Optional[redis.Redis]:
    """Get Redis client if configured."""
    global _redis_client
    if not config.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(config.REDIS_URL, decode_responses=True)
            client.ping()
            _redis_client = client
        except redis.RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            return None

    return _redis_client


def _clean(text: Optional[str]) -> str:
    return (text or "").strip()


# ===== POSITION RECONCILER =====

def insert_queue_entry(session: Session, patient_name: str) -> QueueEntry:
    """Append a patient to the tail of the ongoing queue.

    The ticket number is the position assigned at insert time and is never
    renumbered afterwards.
    """
    name = _clean(patient_name)
    if not name:
        raise ValidationError("Patient name is required")

    current_max = store.max_position(session)
    next_position = 1 if current_max is None else current_max + 1
    entry = QueueEntry(
        ticket_number=next_position,
        patient_name=name,
        position=next_position,
        status=EntryStatus.ongoing,
    )
    entry = store.add_entry(session, entry)
    logger.info("Queued entry %s (%s) at position %s", entry.id, name, entry.position)
    invalidate_board_cache()
    return entry


def renumber_for_proceed(entries: List[QueueEntry], target_id: int) -> List[tuple]:
    """Return ``(entry_id, new_position)`` pairs in the order of ``entries``.

    The target gets position 1; every other entry keeps its relative order
    and takes 2, 3, ... n.
    """
    plan = []
    next_position = 2
    for entry in entries:
        if entry.id == target_id:
            plan.append((entry.id, 1))
        else:
            plan.append((entry.id, next_position))
            next_position += 1
    return plan


def proceed(session: Session, entry_id: int) -> List[QueueEntry]:
    """Move an ongoing entry to the front of the queue and renumber the rest.

    Returns the ongoing queue as read back after the writes.
    """
    ongoing = store.list_entries(session, EntryStatus.ongoing)
    if not any(entry.id == entry_id for entry in ongoing):
        raise NotFoundError("Queue entry", entry_id)

    plan = renumber_for_proceed(ongoing, entry_id)
    atomic = config.ATOMIC_UPDATES
    applied: List[int] = []
    for target, position in plan:
        try:
            store.set_position(session, target, position, commit=not atomic)
        except BackendError as exc:
            if atomic:
                session.rollback()
                raise
            if not applied:
                raise
            logger.error(
                "Proceed on entry %s stopped after %d of %d updates: %s",
                entry_id, len(applied), len(plan), exc,
            )
            invalidate_board_cache()
            raise PartialFailure(
                f"Queue reorder stopped after {len(applied)} of {len(plan)} updates: {exc}",
                applied=applied,
            ) from exc
        applied.append(target)
    if atomic:
        store.commit(session)

    logger.info("Proceeded entry %s to the front (%d entries renumbered)", entry_id, len(plan))
    invalidate_board_cache()
    return store.list_entries(session, EntryStatus.ongoing)


def _remove(session: Session, entry_id: int, reason: str) -> None:
    if not store.delete_entry(session, entry_id):
        raise NotFoundError("Queue entry", entry_id)
    logger.info("Removed entry %s (%s)", entry_id, reason)
    invalidate_board_cache()


def skip(session: Session, entry_id: int) -> None:
    """Skip a patient.  This is a hard delete; other positions are untouched."""
    _remove(session, entry_id, "skipped")


def delete_entry(session: Session, entry_id: int) -> None:
    _remove(session, entry_id, "deleted")


def mark_done(session: Session, entry_id: int) -> QueueEntry:
    """Mark an entry completed.  Its position is left as it was."""
    if not store.set_status(session, entry_id, EntryStatus.completed):
        raise NotFoundError("Queue entry", entry_id)
    logger.info("Entry %s completed", entry_id)
    invalidate_board_cache()
    return store.get_entry(session, entry_id)


def list_ongoing(session: Session) -> List[QueueEntry]:
    return store.list_entries(session, EntryStatus.ongoing)


# ===== DOCTOR ROSTER =====

def list_doctors(session: Session) -> List[Doctor]:
    return store.list_doctors(session)


def get_doctor_in_charge(session: Session) -> Optional[Doctor]:
    """The active doctor, or None when nobody is in charge."""
    active = store.active_doctors(session)
    if len(active) > 1:
        logger.warning("%d doctors flagged in charge; showing the first", len(active))
    return active[0] if active else None


def create_doctor(session: Session, name: str, specialization: Optional[str] = None) -> Doctor:
    name = _clean(name)
    if not name:
        raise ValidationError("Doctor name is required")
    doctor = store.save_doctor(
        session, Doctor(name=name, specialization=_clean(specialization) or None)
    )
    logger.info("Added doctor %s (%s)", doctor.id, doctor.name)
    return doctor


def update_doctor(
    session: Session, doctor_id: int, name: str, specialization: Optional[str] = None
) -> Doctor:
    name = _clean(name)
    if not name:
        raise ValidationError("Doctor name is required")
    doctor = store.get_doctor(session, doctor_id)
    if doctor is None:
        raise NotFoundError("Doctor", doctor_id)
    doctor.name = name
    doctor.specialization = _clean(specialization) or None
    doctor = store.save_doctor(session, doctor)
    logger.info("Updated doctor %s (%s)", doctor.id, doctor.name)
    invalidate_board_cache()
    return doctor


def delete_doctor(session: Session, doctor_id: int) -> None:
    if not store.delete_doctor(session, doctor_id):
        raise NotFoundError("Doctor", doctor_id)
    logger.info("Deleted doctor %s", doctor_id)
    invalidate_board_cache()


def set_in_charge(session: Session, doctor_id: int) -> Doctor:
    """Make ``doctor_id`` the only doctor in charge.

    Clears the flag on every doctor, then sets it on the chosen one.  If the
    second step fails the roster is left with nobody in charge and
    ``ZeroActiveDoctorError`` is raised.  The board cache is dropped once the
    roster has settled, whatever the outcome.
    """
    if store.get_doctor(session, doctor_id) is None:
        raise NotFoundError("Doctor", doctor_id)

    atomic = config.ATOMIC_UPDATES
    store.clear_active_doctors(session, commit=not atomic)
    try:
        _activate(session, doctor_id, atomic)
    finally:
        invalidate_board_cache()

    logger.info("Doctor %s is now in charge", doctor_id)
    return store.get_doctor(session, doctor_id)


def _activate(session: Session, doctor_id: int, atomic: bool) -> None:
    try:
        updated = store.activate_doctor(session, doctor_id, commit=not atomic)
    except BackendError as exc:
        if atomic:
            session.rollback()
            raise
        logger.error("Roster cleared but doctor %s could not be set in charge: %s", doctor_id, exc)
        raise ZeroActiveDoctorError(
            f"No doctor is in charge: setting doctor {doctor_id} failed: {exc}"
        ) from exc

    if not updated:
        if atomic:
            session.rollback()
            raise NotFoundError("Doctor", doctor_id)
        logger.error("Doctor %s vanished before being set in charge", doctor_id)
        raise ZeroActiveDoctorError(f"No doctor is in charge: doctor {doctor_id} no longer exists")
    if atomic:
        store.commit(session)


# ===== QUEUE READER =====

def _entry_dict(entry: QueueEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "ticket_number": entry.ticket_number,
        "patient_name": entry.patient_name,
        "position": entry.position,
        "status": entry.status.value if isinstance(entry.status, EntryStatus) else entry.status,
        "created_at": entry.created_at.isoformat(),
    }


def _doctor_dict(doctor: Optional[Doctor]) -> Optional[Dict[str, Any]]:
    if doctor is None:
        return None
    return {"id": doctor.id, "name": doctor.name, "specialization": doctor.specialization}


def get_board(session: Session, use_cache: bool = True) -> Dict[str, Any]:
    """Public board: ongoing queue in service order and the doctor in charge."""
    if use_cache:
        cached_board = get_cached_board()
        if cached_board:
            return cached_board

    settings = store.get_settings(session)
    board = {
        "clinic_name": settings.clinic_name,
        "doctor_in_charge": _doctor_dict(get_doctor_in_charge(session)),
        "queue": [_entry_dict(e) for e in list_ongoing(session)],
        "poll_interval": config.POLL_INTERVAL_SECONDS,
    }
    cache_board_data(board)
    return board


# ===== STATS AGGREGATOR =====

def stats_for_range(session: Session, from_date: date, to_date: date) -> List[DailyPoint]:
    """Count entries per UTC creation day and status over ``[from_date, to_date]``.

    Every day of the range gets a bucket, including days with no entries.
    """
    buckets: Dict[str, DailyPoint] = {}
    day = from_date
    while day <= to_date:
        key = day.isoformat()
        buckets[key] = DailyPoint(date=key)
        day += timedelta(days=1)
    if not buckets:
        return []

    start = datetime.combine(from_date, time.min, tzinfo=timezone.utc)
    end = datetime.combine(to_date, time.max, tzinfo=timezone.utc)
    for entry in store.entries_created_between(session, start, end):
        point = buckets.get(as_utc(entry.created_at).date().isoformat())
        if point is None:
            continue
        point.total += 1
        status = entry.status.value if isinstance(entry.status, EntryStatus) else entry.status
        if status == EntryStatus.ongoing.value:
            point.ongoing += 1
        elif status == EntryStatus.completed.value:
            point.completed += 1
        elif status == EntryStatus.skipped.value:
            point.skipped += 1
    return list(buckets.values())


# ===== REDIS HELPER FUNCTIONS =====

def cache_board_data(board_data: Dict[str, Any]) -> None:
    """Cache board data in Redis for one poll interval."""
    redis_client = get_redis()
    if redis_client:
        try:
            redis_client.setex(BOARD_CACHE_KEY, config.POLL_INTERVAL_SECONDS, json.dumps(board_data))
        except redis.RedisError as e:
            logger.warning("Redis cache error: %s", e)


def get_cached_board() -> Optional[Dict[str, Any]]:
    redis_client = get_redis()
    if redis_client:
        try:
            cached = redis_client.get(BOARD_CACHE_KEY)
            if cached:
                return json.loads(cached)
        except redis.RedisError as e:
            logger.warning("Redis get error: %s", e)
    return None


def invalidate_board_cache() -> None:
    redis_client = get_redis()
    if redis_client:
        try:
            redis_client.delete(BOARD_CACHE_KEY)
        except redis.RedisError as e:
            logger.warning("Redis delete error: %s", e)


def check_rate_limit(client_id: str, action: str = "booking", limit: int = 5, window: int = 300) -> bool:
    """Check if a client is rate limited. Returns True if allowed, False if rate limited."""
    redis_client = get_redis()
    if not redis_client:
        return True  # Allow if Redis unavailable

    try:
        key = f"rate_limit:{action}:{client_id}"
        count = redis_client.incr(key)
        if count == 1:
            # First request opens the window
            redis_client.expire(key, window)
        return count <= limit
    except redis.RedisError as e:
        logger.warning("Redis rate limit error: %s", e)
        return True
