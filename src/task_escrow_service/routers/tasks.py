"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import (
    extract_token,
    parse_deadline,
    parse_json_body,
    parse_task_id,
    require_field,
    require_matching_task_id,
)
from task_escrow_service.schemas import (
    TaskCountResponse,
    TaskEventListResponse,
    TaskListResponse,
    TaskResponse,
)

if TYPE_CHECKING:
    from task_escrow_service.services.task_ledger import TaskLedger

router = APIRouter()


def _task_ledger() -> TaskLedger:
    state = get_app_state()
    if state.task_ledger is None:
        msg = "TaskLedger not initialized"
        raise RuntimeError(msg)
    return state.task_ledger


async def _authenticate(request: Request, action: str) -> dict[str, Any]:
    """Read the request token and return its verified payload."""
    body = await request.body()
    data = parse_json_body(body)
    token = extract_token(data, "token")

    state = get_app_state()
    if state.token_validator is None:
        msg = "TokenValidator not initialized"
        raise RuntimeError(msg)

    return await state.token_validator.validate_jws_token(token, action)


async def _authenticate_for_task(request: Request, action: str, task_id: int) -> str:
    """Verify a task-scoped token and return the caller identity."""
    payload = await _authenticate(request, action)
    require_matching_task_id(payload, task_id)
    return str(payload["_signer_id"])


# ---------------------------------------------------------------------------
# POST /tasks: create task (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Create a new task funded from the caller's account."""
    payload = await _authenticate(request, "create_task")
    description = require_field(payload, "description")
    deadline = parse_deadline(require_field(payload, "deadline"))
    amount = require_field(payload, "amount")

    result = await _task_ledger().create_task(
        payload["_signer_id"],
        description,
        deadline,
        amount,
    )
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# GET /tasks: list tasks (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.get("/tasks", response_model=TaskListResponse)
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional client, freelancer and status filters."""
    client_id = request.query_params.get("client_id")
    freelancer_id = request.query_params.get("freelancer_id")
    status = request.query_params.get("status")

    ledger = _task_ledger()
    if client_id is not None and freelancer_id is None and status is None:
        tasks = ledger.list_client_tasks(client_id)
    elif freelancer_id is not None and client_id is None and status is None:
        tasks = ledger.list_freelancer_tasks(freelancer_id)
    else:
        tasks = ledger.list_tasks(
            client_id=client_id,
            freelancer_id=freelancer_id,
            status=status,
        )
    return {"tasks": tasks}


@router.get("/tasks/count", response_model=TaskCountResponse)
async def get_task_count() -> dict[str, int]:
    """Number of tasks ever created."""
    return {"count": _task_ledger().get_task_count()}


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/accept")
async def accept_task(task_id: str, request: Request) -> JSONResponse:
    """Accept an open task as its freelancer."""
    task_number = parse_task_id(task_id)
    caller_id = await _authenticate_for_task(request, "accept_task", task_number)
    result = await _task_ledger().accept_task(caller_id, task_number)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/submit")
async def submit_task(task_id: str, request: Request) -> JSONResponse:
    """Submit the deliverable link for review."""
    task_number = parse_task_id(task_id)
    payload = await _authenticate(request, "submit_task")
    require_matching_task_id(payload, task_number)
    deliverable_link = require_field(payload, "deliverable_link")

    result = await _task_ledger().submit_task(
        str(payload["_signer_id"]),
        task_number,
        deliverable_link,
    )
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/approve")
async def approve_task(task_id: str, request: Request) -> JSONResponse:
    """Approve the deliverable and pay the freelancer."""
    task_number = parse_task_id(task_id)
    caller_id = await _authenticate_for_task(request, "approve_task", task_number)
    result = await _task_ledger().approve_task(caller_id, task_number)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/dispute")
async def dispute_task(task_id: str, request: Request) -> JSONResponse:
    """Flag the deliverable as disputed."""
    task_number = parse_task_id(task_id)
    caller_id = await _authenticate_for_task(request, "dispute_task", task_number)
    result = await _task_ledger().dispute_task(caller_id, task_number)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> JSONResponse:
    """Cancel an unaccepted task and refund the client."""
    task_number = parse_task_id(task_id)
    caller_id = await _authenticate_for_task(request, "cancel_task", task_number)
    result = await _task_ledger().cancel_task(caller_id, task_number)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Task reads
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}/events", response_model=TaskEventListResponse)
async def list_task_events(task_id: str) -> dict[str, Any]:
    """List the committed transitions of one task."""
    task_number = parse_task_id(task_id)
    events = _task_ledger().list_events(task_id=task_number)
    return {"task_id": task_number, "events": events}


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str) -> dict[str, Any]:
    """Get full task details."""
    return _task_ledger().get_task(parse_task_id(task_id))
