"""FastAPI application for the clinic queue system.

The app exposes a public live board and booking kiosk, and an admin surface
for managing doctors, advancing the queue and viewing volume statistics.
It reads configuration from environment variables (see ``config``) and
connects to a relational database through SQLModel.  Redis is optional and
used only for board caching and booking rate limits.
"""

from __future__ import annotations

import logging
import sys
import urllib.parse
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from sqlmodel import Session

import config
import store
from exceptions import (
    BackendError,
    NotFoundError,
    PartialFailure,
    ValidationError,
)
from schemas import (
    ActionRequest,
    DoctorCreate,
    DoctorRead,
    PatientCreate,
    QueueEntryRead,
    StatsResponse,
)
from services import (
    check_rate_limit,
    create_doctor,
    delete_doctor,
    delete_entry,
    get_board,
    get_redis,
    insert_queue_entry,
    list_doctors,
    list_ongoing,
    mark_done,
    proceed,
    set_in_charge,
    skip,
    stats_for_range,
    update_doctor,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Clinic Queue",
    description="Patient queue and doctor-in-charge board for a clinic",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    """Create tables and apply the admin passcode from the environment."""
    store.init_db()
    logger.info(
        "Clinic Queue started (database=%s, redis=%s, atomic_updates=%s)",
        "PostgreSQL" if config.DATABASE_URL.startswith("postgres") else "SQLite",
        "configured" if config.REDIS_URL else "not configured",
        config.ATOMIC_UPDATES,
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


# ===== ERROR HANDLERS =====

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(PartialFailure)
async def partial_failure_handler(request: Request, exc: PartialFailure):
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc), "type": type(exc).__name__, "applied": exc.applied},
    )


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch anything unhandled, log it and answer with a 500."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": str(exc), "type": type(exc).__name__},
    )


# ===== AUTH =====

def check_passcode(session: Session, passcode: str) -> None:
    settings = store.get_settings(session)
    if passcode != settings.admin_passcode:
        raise HTTPException(status_code=401, detail="Invalid passcode")


def require_admin(passcode: str = Query(...), session: Session = Depends(store.get_session)) -> Session:
    """Dependency for admin routes: validates the passcode, yields the session."""
    check_passcode(session, passcode)
    return session


def _client_id(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# ===== PUBLIC =====

@app.get("/")
def root() -> Dict[str, Any]:
    return {
        "status": "running",
        "service": "Clinic Queue API",
        "board": "/board",
        "kiosk": "/kiosk",
    }


@app.get("/health")
def health(session: Session = Depends(store.get_session)) -> Dict[str, Any]:
    result = {"status": "healthy", "database": "connected", "redis": "not_configured"}
    try:
        store.get_settings(session)
    except BackendError as e:
        logger.error("Health check database error: %s", e)
        result["status"] = "degraded"
        result["database"] = "unavailable"
    if config.REDIS_URL:
        result["redis"] = "connected" if get_redis() else "unavailable"
    return result


@app.get("/queue")
def public_queue(session: Session = Depends(store.get_session)) -> Dict[str, Any]:
    """Live board: ongoing queue in service order and the doctor in charge."""
    return get_board(session)


@app.post("/queue", response_model=QueueEntryRead, status_code=201)
def book(body: PatientCreate, request: Request, session: Session = Depends(store.get_session)):
    """Public booking form."""
    if not check_rate_limit(
        _client_id(request), "booking", config.BOOKING_RATE_LIMIT, config.BOOKING_RATE_WINDOW
    ):
        raise HTTPException(status_code=429, detail="Too many bookings. Please wait a few minutes.")
    return insert_queue_entry(session, body.patient_name)


@app.get("/kiosk", response_class=HTMLResponse)
def kiosk_page() -> str:
    """Return a minimal kiosk check-in page.

    This page posts to `/kiosk/join` when the button is clicked.
    """
    return """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8" />
    <title>Kiosk Check-In</title>
    <style>
        body { font-family: sans-serif; text-align: center; margin-top: 50px; }
        button { font-size: 2rem; padding: 1rem 2rem; }
    </style>
</head>
<body>
    <h1>Join the queue</h1>
    <form method="post" action="/kiosk/join">
        <input type="text" name="patient_name" placeholder="Your name" required style="font-size:1.2rem; padding:0.5rem;" />
        <br/><br/>
        <button type="submit">Join</button>
    </form>
</body>
</html>
    """


@app.post("/kiosk/join", response_class=PlainTextResponse)
async def kiosk_join(request: Request, session: Session = Depends(store.get_session)) -> str:
    """Create a queue entry from the kiosk form."""
    # Form-encoded body parsed by hand to avoid python-multipart
    body_bytes = await request.body()
    try:
        parsed = urllib.parse.parse_qs(body_bytes.decode())
    except UnicodeDecodeError:
        return "Please enter your name to join the queue."
    name = parsed.get("patient_name", [""])[0]
    if not check_rate_limit(
        _client_id(request), "booking", config.BOOKING_RATE_LIMIT, config.BOOKING_RATE_WINDOW
    ):
        return "Too many requests. Please wait a few minutes before trying again."
    try:
        entry = insert_queue_entry(session, name)
    except ValidationError:
        return "Please enter your name to join the queue."
    return f"Your ticket is {entry.ticket_number}. You are #{entry.position}. Please stay nearby."


@app.get("/board", response_class=HTMLResponse)
def board_page() -> str:
    """Return the public live board.  It polls `/queue` on a fixed interval."""
    interval_ms = config.POLL_INTERVAL_SECONDS * 1000
    return """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8" />
    <title>Ongoing Queue</title>
    <style>
        body { font-family: sans-serif; margin: 2rem; }
        .grid { display: grid; grid-template-columns: repeat(auto-fill, minmax(140px, 1fr)); gap: 1rem; }
        .card { border: 1px solid #ddd; border-radius: 0.5rem; padding: 1rem; text-align: center; }
        .pos { font-size: 2.5rem; font-weight: 700; }
        .error { color: #dc2626; }
    </style>
</head>
<body>
    <h1 id="clinic">Ongoing Queue</h1>
    <p>Doctor in charge: <strong id="doctor">-</strong></p>
    <p class="error" id="error"></p>
    <div class="grid" id="queue"></div>
    <script>
        async function refresh() {
            try {
                const res = await fetch("/queue");
                if (!res.ok) throw new Error("HTTP " + res.status);
                const board = await res.json();
                document.getElementById("clinic").textContent = board.clinic_name;
                document.getElementById("doctor").textContent =
                    board.doctor_in_charge ? board.doctor_in_charge.name : "No doctor in charge";
                const grid = document.getElementById("queue");
                grid.innerHTML = "";
                for (const item of board.queue) {
                    const card = document.createElement("div");
                    card.className = "card";
                    const pos = document.createElement("div");
                    pos.className = "pos";
                    pos.textContent = item.position;
                    const name = document.createElement("div");
                    name.textContent = item.patient_name;
                    const ticket = document.createElement("div");
                    ticket.textContent = "Ticket " + item.ticket_number;
                    card.append(pos, name, ticket);
                    grid.appendChild(card);
                }
                document.getElementById("error").textContent = "";
            } catch (e) {
                document.getElementById("error").textContent = e.message;
            }
        }
        refresh();
        setInterval(refresh, %d);
    </script>
</body>
</html>
    """ % interval_ms


# ===== ADMIN: QUEUE =====

@app.get("/admin/board", response_model=List[QueueEntryRead])
def admin_board(session: Session = Depends(require_admin)):
    return list_ongoing(session)


@app.post("/admin/queue", response_model=QueueEntryRead, status_code=201)
def admin_insert(body: PatientCreate, session: Session = Depends(require_admin)):
    return insert_queue_entry(session, body.patient_name)


@app.post("/admin/action")
def admin_action(request: ActionRequest, session: Session = Depends(store.get_session)) -> Dict[str, Any]:
    """Perform an action on a queue entry (proceed, skip, done, delete).

    After the action, returns the ongoing queue in service order.
    """
    check_passcode(session, request.passcode)
    if request.action == "proceed":
        queue = proceed(session, request.entry_id)
    else:
        if request.action == "skip":
            skip(session, request.entry_id)
        elif request.action == "done":
            mark_done(session, request.entry_id)
        elif request.action == "delete":
            delete_entry(session, request.entry_id)
        queue = list_ongoing(session)
    return {
        "action": request.action,
        "entry_id": request.entry_id,
        "queue": [QueueEntryRead.model_validate(e, from_attributes=True) for e in queue],
    }


# ===== ADMIN: DOCTORS =====

@app.get("/admin/doctors", response_model=List[DoctorRead])
def admin_list_doctors(session: Session = Depends(require_admin)):
    return list_doctors(session)


@app.post("/admin/doctors", response_model=DoctorRead, status_code=201)
def admin_create_doctor(body: DoctorCreate, session: Session = Depends(require_admin)):
    return create_doctor(session, body.name, body.specialization)


@app.put("/admin/doctors/{doctor_id}", response_model=DoctorRead)
def admin_update_doctor(doctor_id: int, body: DoctorCreate, session: Session = Depends(require_admin)):
    return update_doctor(session, doctor_id, body.name, body.specialization)


@app.delete("/admin/doctors/{doctor_id}")
def admin_delete_doctor(doctor_id: int, session: Session = Depends(require_admin)) -> Dict[str, Any]:
    delete_doctor(session, doctor_id)
    return {"success": True, "doctor_id": doctor_id}


@app.post("/admin/doctors/{doctor_id}/in-charge", response_model=DoctorRead)
def admin_set_in_charge(doctor_id: int, session: Session = Depends(require_admin)):
    return set_in_charge(session, doctor_id)


# ===== ADMIN: STATS =====

@app.get("/admin/stats", response_model=StatsResponse)
def admin_stats(
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    session: Session = Depends(require_admin),
):
    """Daily volume by status.  Defaults to the last seven days, today included."""
    today = datetime.now(timezone.utc).date()
    to_date = to_date or today
    from_date = from_date or to_date - timedelta(days=6)
    days = stats_for_range(session, from_date, to_date)
    return StatsResponse(
        from_date=from_date.isoformat(),
        to_date=to_date.isoformat(),
        days=days,
        total=sum(d.total for d in days),
        ongoing=sum(d.ongoing for d in days),
        completed=sum(d.completed for d in days),
        skipped=sum(d.skipped for d in days),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
