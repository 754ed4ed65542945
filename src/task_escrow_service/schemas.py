"""Pydantic request/response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]
    escrow_held: int


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class TaskResponse(BaseModel):
    """Full task detail response model."""

    model_config = ConfigDict(extra="forbid")
    task_id: int
    client_id: str
    freelancer_id: str | None
    description: str
    amount: int
    escrow_ref: str
    deadline: str
    deadline_passed: bool
    status: Literal[
        "created", "accepted", "submitted", "approved", "disputed", "completed", "cancelled"
    ]
    status_code: int
    deliverable_link: str | None
    created_at: str
    accepted_at: str | None
    submitted_at: str | None
    completed_at: str | None
    disputed_at: str | None
    cancelled_at: str | None


class TaskListResponse(BaseModel):
    """Response model for GET /tasks."""

    model_config = ConfigDict(extra="forbid")
    tasks: list[TaskResponse]


class TaskCountResponse(BaseModel):
    """Response model for GET /tasks/count."""

    model_config = ConfigDict(extra="forbid")
    count: int


class EventResponse(BaseModel):
    """A single committed lifecycle transition."""

    model_config = ConfigDict(extra="forbid")
    event_id: int
    task_id: int
    event_type: str
    status: str
    actor_id: str
    occurred_at: str


class EventListResponse(BaseModel):
    """Response model for GET /events."""

    model_config = ConfigDict(extra="forbid")
    events: list[EventResponse]


class TaskEventListResponse(BaseModel):
    """Response model for GET /tasks/{task_id}/events."""

    model_config = ConfigDict(extra="forbid")
    task_id: int
    events: list[EventResponse]


class AccountResponse(BaseModel):
    """Response model for an account balance."""

    model_config = ConfigDict(extra="forbid")
    account_id: str
    balance: int
    created_at: str
