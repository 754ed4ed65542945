"""Transition event feed."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import parse_non_negative_int
from task_escrow_service.schemas import EventListResponse

router = APIRouter()


@router.get("/events", response_model=EventListResponse)
async def list_events(request: Request) -> dict[str, Any]:
    """List transition events, optionally only those after a given event id."""
    after = parse_non_negative_int(request.query_params.get("after"), "after")

    state = get_app_state()
    if state.task_ledger is None:
        msg = "TaskLedger not initialized"
        raise RuntimeError(msg)

    return {"events": state.task_ledger.list_events(after=after)}
