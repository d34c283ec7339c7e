"""FastAPI application exposing the tracking controls and entry review API."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import TrackerSettings
from .coordinator import TrackingCoordinator
from .errors import InvalidOperationError, NotFoundError
from .models import (
    ApplicationAttribution,
    BookingStatus,
    EntryChanges,
    PauseReason,
    TimeEntry,
    TodoAttribution,
)
from .observers import create_default_observers
from .paths import resolve_db_path
from .store import TimeEntryStore

logger = logging.getLogger(__name__)


def _to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Entries are stored in naive local time; convert offset-aware input to match."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


class TimerStart(BaseModel):
    label: Optional[str] = None
    todo_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class PauseRequest(BaseModel):
    reason: PauseReason = PauseReason.USER_REQUESTED

    model_config = ConfigDict(extra="forbid")


class EntryUpdate(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    label: Optional[str] = None
    notes: Optional[str] = None
    todo_id: Optional[str] = None
    remove_todo: bool = False
    booking_status: Optional[BookingStatus] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_times(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _to_local_naive(value)


class MergeRequest(BaseModel):
    entry_ids: List[str] = Field(min_length=2)

    model_config = ConfigDict(extra="forbid")


class SplitRequest(BaseModel):
    at: datetime

    model_config = ConfigDict(extra="forbid")

    @field_validator("at")
    @classmethod
    def normalize_at(cls, value: datetime) -> datetime:
        return _to_local_naive(value)


class ReviewRequest(BaseModel):
    entry_ids: List[str]
    status: BookingStatus = BookingStatus.REVIEWED

    model_config = ConfigDict(extra="forbid")


class PurgeRequest(BaseModel):
    retention_days: Optional[int] = Field(default=None, ge=1)

    model_config = ConfigDict(extra="forbid")


def create_app(
    *,
    db_path: Optional[Path] = None,
    settings: Optional[TrackerSettings] = None,
    coordinator: Optional[TrackingCoordinator] = None,
    store: Optional[TimeEntryStore] = None,
    autostart: bool = True,
) -> FastAPI:
    """Instantiate the FastAPI application."""
    resolved_settings = settings or TrackerSettings()
    resolved_db_path = resolve_db_path(db_path)
    owns_store = store is None
    store = store or TimeEntryStore.open(resolved_db_path)
    if coordinator is None:
        focus, idle = create_default_observers(resolved_settings)
        coordinator = TrackingCoordinator(store, focus, idle, resolved_settings)

    app = FastAPI(title="AutoTrack", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.db_path = resolved_db_path
    app.state.store = store
    app.state.coordinator = coordinator

    @app.on_event("startup")
    async def _startup() -> None:
        recovered = coordinator.recover_from_crash()
        if recovered:
            logger.info("Closed %d entries left open by the previous run.", recovered)
        store.purge_expired(resolved_settings.retention_days)
        if autostart:
            coordinator.start_tracking()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        coordinator.shutdown()
        if owns_store:
            store.close()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        current = request.app.state.coordinator.status
        return {
            "state": current.state.value,
            "pause_reason": current.pause_reason.value if current.pause_reason else None,
            "label": current.label,
            "elapsed_seconds": current.elapsed_seconds,
            "manual_timer_active": current.manual_timer_active,
            "database_path": str(request.app.state.db_path),
            "minimum_switch_seconds": resolved_settings.minimum_switch_duration.total_seconds(),
            "checkpoint_seconds": resolved_settings.checkpoint_interval.total_seconds(),
        }

    @app.post("/api/tracking/start")
    def start_tracking(request: Request) -> Dict[str, Any]:
        return {"state": request.app.state.coordinator.start_tracking().value}

    @app.post("/api/tracking/stop")
    def stop_tracking(request: Request) -> Dict[str, Any]:
        return {"state": request.app.state.coordinator.stop_tracking().value}

    @app.post("/api/tracking/pause")
    def pause_tracking(request: Request, payload: Optional[PauseRequest] = None) -> Dict[str, Any]:
        reason = payload.reason if payload else PauseReason.USER_REQUESTED
        return {"state": request.app.state.coordinator.pause(reason).value}

    @app.post("/api/tracking/resume")
    def resume_tracking(request: Request) -> Dict[str, Any]:
        return {"state": request.app.state.coordinator.resume().value}

    @app.post("/api/tracking/permission-granted")
    def permission_granted(request: Request) -> Dict[str, Any]:
        return {"state": request.app.state.coordinator.permission_granted().value}

    @app.post("/api/timer/start")
    def start_timer(payload: TimerStart, request: Request) -> Dict[str, Any]:
        label = payload.label.strip() if payload.label else None
        state = request.app.state.coordinator.start_manual_timer(
            label=label or None, todo_id=payload.todo_id
        )
        return {"state": state.value}

    @app.post("/api/timer/stop")
    def stop_timer(request: Request) -> Dict[str, Any]:
        return {"state": request.app.state.coordinator.stop_manual_timer().value}

    @app.get("/api/entries")
    def entries(
        request: Request,
        date: Optional[str] = Query(
            default=None,
            description="Target date in YYYY-MM-DD format.",
        ),
    ) -> Dict[str, Any]:
        target_day = _parse_date(date)
        rows = request.app.state.store.entries_for_day(target_day)
        return {
            "date": target_day.strftime("%Y-%m-%d"),
            "entries": [_entry_payload(entry) for entry in rows],
        }

    @app.patch("/api/entries/{entry_id}")
    def update_entry_endpoint(
        entry_id: str, payload: EntryUpdate, request: Request
    ) -> Dict[str, Any]:
        changes = EntryChanges(**payload.model_dump(exclude_unset=True))
        with _translate_errors():
            entry = request.app.state.store.update(entry_id, changes)
        return _entry_payload(entry)

    @app.post("/api/entries/merge")
    def merge_entries(payload: MergeRequest, request: Request) -> Dict[str, Any]:
        with _translate_errors():
            merged_id = request.app.state.store.merge(payload.entry_ids)
            entry = request.app.state.store.get(merged_id)
        return _entry_payload(entry)

    @app.post("/api/entries/{entry_id}/split")
    def split_entry(entry_id: str, payload: SplitRequest, request: Request) -> Dict[str, Any]:
        with _translate_errors():
            first_id, second_id = request.app.state.store.split(entry_id, payload.at)
            first = request.app.state.store.get(first_id)
            second = request.app.state.store.get(second_id)
        return {"entries": [_entry_payload(first), _entry_payload(second)]}

    @app.post("/api/entries/review")
    def review_entries(payload: ReviewRequest, request: Request) -> Dict[str, Any]:
        with _translate_errors():
            if payload.status is BookingStatus.REVIEWED:
                changed = request.app.state.store.mark_reviewed(payload.entry_ids)
            else:
                request.app.state.store.advance_booking_status(
                    payload.entry_ids, payload.status
                )
                changed = len(payload.entry_ids)
        return {"updated": changed, "status": payload.status.value}

    @app.post("/api/maintenance/purge")
    def purge(request: Request, payload: Optional[PurgeRequest] = None) -> Dict[str, Any]:
        days = (
            payload.retention_days
            if payload and payload.retention_days
            else resolved_settings.retention_days
        )
        removed = request.app.state.store.purge_expired(days)
        return {"removed": removed, "retention_days": days}

    return app


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Map store errors onto HTTP responses."""
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail="Entry not found") from exc
    except InvalidOperationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _parse_date(value: Optional[str]) -> datetime:
    if not value:
        return _start_of_day(datetime.now())
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc
    return _start_of_day(parsed)


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _entry_payload(entry: TimeEntry) -> Dict[str, Any]:
    attribution = entry.attribution
    return {
        "id": entry.id,
        "start_time": entry.start_time.isoformat(),
        "end_time": entry.end_time.isoformat() if entry.end_time else None,
        "in_progress": entry.in_progress,
        "duration_seconds": entry.effective_duration(),
        "label": entry.display_label,
        "attribution": attribution.kind,
        "application_name": (
            attribution.name if isinstance(attribution, ApplicationAttribution) else None
        ),
        "todo_id": attribution.todo_id if isinstance(attribution, TodoAttribution) else None,
        "source": entry.source.value,
        "booking_status": entry.booking_status.value,
        "notes": entry.notes,
    }
