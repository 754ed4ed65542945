"""Task escrow lifecycle: the authoritative state machine over tasks and their escrow."""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, NoReturn

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from task_escrow_service.core.ports import Clock
    from task_escrow_service.services.escrow_coordinator import EscrowCoordinator
    from task_escrow_service.services.task_store import TaskStore

# Ordinal codes follow the on-chain TaskStatus enum the ledger replaces.
# "approved" is reserved: approval settles straight to "completed".
STATUS_CODES: dict[str, int] = {
    "created": 0,
    "accepted": 1,
    "submitted": 2,
    "approved": 3,
    "disputed": 4,
    "completed": 5,
    "cancelled": 6,
}

# Statuses whose escrow has not been disbursed
_ESCROW_HELD_STATUSES = frozenset({"created", "accepted", "submitted", "disputed"})

# Largest value an SQLite INTEGER column holds
SQLITE_MAX_INTEGER = 2**63 - 1


def _utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(moment: datetime) -> str:
    """Render an aware datetime as ISO 8601 UTC with a Z suffix."""
    return moment.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def from_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp written by to_iso()."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _is_positive_int(value: object) -> bool:
    """Check if value is a positive integer (not float, not bool) that fits in SQLite."""
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and 0 < value <= SQLITE_MAX_INTEGER
    )


@dataclass
class _TaskLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class TaskLedger:
    """
    Owns every task's status, counterparties and escrowed value.

    Each operation takes the authenticated caller identity explicitly.
    Mutations of one task are serialized by a per-task lock, and every
    status write is additionally a compare-and-set on the prior status.
    Approval and cancellation first claim the task in the store, then move
    the value, then write the status under that claim. A failed transfer
    drops the claim and leaves the task and its escrow untouched.
    """

    def __init__(
        self,
        store: TaskStore,
        escrow_coordinator: EscrowCoordinator,
        *,
        max_description_length: int,
        max_deliverable_link_length: int,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._escrow_coordinator = escrow_coordinator
        self._max_description_length = max_description_length
        self._max_deliverable_link_length = max_deliverable_link_length
        self._clock: Clock = clock if clock is not None else _utc_now
        self._task_locks: dict[int, _TaskLock] = {}
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _require_known_id(self, task_id: int) -> None:
        # Ids are allocated without gaps, so 0..count-1 is exactly the set of tasks
        if (
            not isinstance(task_id, int)
            or isinstance(task_id, bool)
            or not 0 <= task_id < self._store.count_tasks()
        ):
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})

    @contextlib.asynccontextmanager
    async def _task_lock(self, task_id: int) -> AsyncIterator[None]:
        """Hold the task's lock. Entries exist only while someone holds or awaits them."""
        self._require_known_id(task_id)
        entry = self._task_locks.get(task_id)
        if entry is None:
            entry = _TaskLock()
            self._task_locks[task_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._task_locks[task_id]

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            msg = "Clock must return timezone-aware datetimes"
            raise RuntimeError(msg)
        return now

    def _task_to_response(self, row: dict[str, Any]) -> dict[str, Any]:
        """Convert a DB row dict to a task response dict."""
        return {
            "task_id": row["task_id"],
            "client_id": row["client_id"],
            "freelancer_id": row["freelancer_id"],
            "description": row["description"],
            "amount": row["amount"],
            "escrow_ref": row["escrow_ref"],
            "deadline": row["deadline"],
            "deadline_passed": self._now() >= from_iso(row["deadline"]),
            "status": row["status"],
            "status_code": STATUS_CODES[row["status"]],
            "deliverable_link": row["deliverable_link"],
            "created_at": row["created_at"],
            "accepted_at": row["accepted_at"],
            "submitted_at": row["submitted_at"],
            "completed_at": row["completed_at"],
            "disputed_at": row["disputed_at"],
            "cancelled_at": row["cancelled_at"],
        }

    @staticmethod
    def _require_caller(caller_id: object) -> str:
        if not isinstance(caller_id, str) or len(caller_id) < 1:
            raise ServiceError("FORBIDDEN", "An authenticated caller is required", 403, {})
        return caller_id

    def _load_task(self, task_id: int) -> dict[str, Any]:
        self._require_known_id(task_id)
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
        return task

    @staticmethod
    def _require_status(task: dict[str, Any], expected: str, verb: str) -> None:
        if task["status"] != expected:
            raise ServiceError(
                "INVALID_STATUS",
                f"Cannot {verb} task in '{task['status']}' status, must be '{expected}'",
                409,
                {"task_id": task["task_id"], "status": task["status"]},
            )

    def _raise_moved_concurrently(self, task_id: int) -> NoReturn:
        current = self._load_task(task_id)
        if current["settlement_claim"] is not None:
            message = "Task is being settled concurrently"
        else:
            message = f"Task moved to '{current['status']}' status concurrently"
        raise ServiceError(
            "INVALID_STATUS",
            message,
            409,
            {"task_id": task_id, "status": current["status"]},
        )

    def _commit_transition(
        self,
        task: dict[str, Any],
        updates: dict[str, Any],
        *,
        expected_status: str,
        event_type: str,
        actor_id: str,
        occurred_at: str,
        claim: str | None = None,
    ) -> dict[str, Any]:
        """Write a transition and return the refreshed task response."""
        task_id = int(task["task_id"])
        committed = self._store.transition_task(
            task_id,
            updates,
            expected_status=expected_status,
            event_type=event_type,
            actor_id=actor_id,
            occurred_at=occurred_at,
            claim=claim,
        )
        if not committed:
            self._raise_moved_concurrently(task_id)

        self._logger.info(
            "Task transition committed",
            extra={
                "task_id": task_id,
                "event_type": event_type,
                "from_status": expected_status,
                "to_status": updates["status"],
                "actor_id": actor_id,
            },
        )
        return self._task_to_response(self._load_task(task_id))

    async def _settle(
        self,
        task: dict[str, Any],
        recipient_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str,
        event_type: str,
        actor_id: str,
        occurred_at: str,
    ) -> dict[str, Any]:
        """
        Release the task's escrow to recipient_id and write the closing status.

        The task is claimed in the store before any value moves, so a writer
        on another connection cannot transition it while the transfer is in
        flight. A failed transfer drops the claim. A status write that fails
        after the transfer leaves the claim in place and is logged as critical.
        """
        task_id = int(task["task_id"])
        claim = f"{event_type}:{uuid.uuid4()}"
        if not self._store.claim_settlement(
            task_id, expected_status=expected_status, claim=claim
        ):
            self._raise_moved_concurrently(task_id)

        try:
            await self._escrow_coordinator.release(
                recipient_id, task["amount"], task["escrow_ref"]
            )
        except Exception:
            self._store.release_settlement(task_id, claim=claim)
            raise

        try:
            return self._commit_transition(
                task,
                updates,
                expected_status=expected_status,
                event_type=event_type,
                actor_id=actor_id,
                occurred_at=occurred_at,
                claim=claim,
            )
        except Exception:
            self._logger.critical(
                "Escrow disbursed but task status write failed",
                extra={
                    "task_id": task_id,
                    "escrow_ref": task["escrow_ref"],
                    "amount": task["amount"],
                    "recipient_id": recipient_id,
                    "to_status": updates["status"],
                },
            )
            raise

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def create_task(
        self,
        caller_id: str,
        description: str,
        deadline: datetime,
        attached_value: int,
    ) -> dict[str, Any]:
        """
        Create a task funded by the caller's attached value.

        Error precedence:
        1. FORBIDDEN: no caller identity
        2. INVALID_AMOUNT: attached value is not a positive integer
        3. INVALID_DEADLINE: deadline is naive or not strictly in the future
        4. INVALID_DESCRIPTION: description is not a string or too long
        5. INSUFFICIENT_FUNDS / ACCOUNT_NOT_FOUND / TRANSFER_FAILED: collection
        """
        client_id = self._require_caller(caller_id)

        if not _is_positive_int(attached_value):
            raise ServiceError(
                "INVALID_AMOUNT",
                "Attached value must be a positive integer",
                400,
                {},
            )

        if not isinstance(deadline, datetime) or deadline.tzinfo is None:
            raise ServiceError(
                "INVALID_DEADLINE",
                "Deadline must be a timezone-aware timestamp",
                400,
                {},
            )

        now = self._now()
        if deadline <= now:
            raise ServiceError("INVALID_DEADLINE", "Deadline must be in the future", 400, {})

        if not isinstance(description, str):
            raise ServiceError("INVALID_DESCRIPTION", "Description must be a string", 400, {})
        if len(description) > self._max_description_length:
            raise ServiceError(
                "INVALID_DESCRIPTION",
                f"Description must not exceed {self._max_description_length} characters",
                400,
                {},
            )

        escrow_ref = f"esc-{uuid.uuid4()}"
        await self._escrow_coordinator.collect(client_id, attached_value, escrow_ref)

        created_at = to_iso(now)
        try:
            task_id = self._store.insert_task(
                {
                    "client_id": client_id,
                    "freelancer_id": None,
                    "description": description,
                    "amount": attached_value,
                    "escrow_ref": escrow_ref,
                    "deadline": to_iso(deadline),
                    "status": "created",
                    "deliverable_link": None,
                    "created_at": created_at,
                    "accepted_at": None,
                    "submitted_at": None,
                    "completed_at": None,
                    "disputed_at": None,
                    "cancelled_at": None,
                },
                event_type="task_created",
            )
        except Exception:
            # Insert failed: hand the collected value back to the caller
            try:
                await self._escrow_coordinator.release(client_id, attached_value, escrow_ref)
            except ServiceError:
                self._logger.error(
                    "Failed to refund escrow during create rollback",
                    extra={"client_id": client_id, "escrow_ref": escrow_ref},
                )
            raise

        self._logger.info(
            "Task created",
            extra={"task_id": task_id, "client_id": client_id, "amount": attached_value},
        )
        return self._task_to_response(self._load_task(task_id))

    async def accept_task(self, caller_id: str, task_id: int) -> dict[str, Any]:
        """
        Bind the caller as the task's freelancer.

        Error precedence:
        1. TASK_NOT_FOUND
        2. FORBIDDEN: caller is the task's client (whatever the status)
        3. INVALID_STATUS: not 'created'
        """
        freelancer_id = self._require_caller(caller_id)
        async with self._task_lock(task_id):
            task = self._load_task(task_id)

            if freelancer_id == task["client_id"]:
                raise ServiceError(
                    "FORBIDDEN",
                    "Client cannot accept their own task",
                    403,
                    {"task_id": task_id},
                )

            self._require_status(task, "created", "accept")

            accepted_at = to_iso(self._now())
            return self._commit_transition(
                task,
                {"status": "accepted", "freelancer_id": freelancer_id, "accepted_at": accepted_at},
                expected_status="created",
                event_type="task_accepted",
                actor_id=freelancer_id,
                occurred_at=accepted_at,
            )

    async def submit_task(
        self,
        caller_id: str,
        task_id: int,
        deliverable_link: str,
    ) -> dict[str, Any]:
        """
        Record the freelancer's deliverable and move the task to review.

        Error precedence:
        1. TASK_NOT_FOUND
        2. INVALID_STATUS: not 'accepted'
        3. FORBIDDEN: caller is not the bound freelancer
        4. INVALID_DELIVERABLE: empty or too long
        """
        freelancer_id = self._require_caller(caller_id)
        async with self._task_lock(task_id):
            task = self._load_task(task_id)
            self._require_status(task, "accepted", "submit")

            if freelancer_id != task["freelancer_id"]:
                raise ServiceError(
                    "FORBIDDEN",
                    "Only the assigned freelancer can submit work",
                    403,
                    {"task_id": task_id},
                )

            if not isinstance(deliverable_link, str) or len(deliverable_link.strip()) < 1:
                raise ServiceError(
                    "INVALID_DELIVERABLE",
                    "Deliverable link must be a non-empty string",
                    400,
                    {},
                )
            if len(deliverable_link) > self._max_deliverable_link_length:
                raise ServiceError(
                    "INVALID_DELIVERABLE",
                    "Deliverable link must not exceed "
                    f"{self._max_deliverable_link_length} characters",
                    400,
                    {},
                )

            submitted_at = to_iso(self._now())
            return self._commit_transition(
                task,
                {
                    "status": "submitted",
                    "deliverable_link": deliverable_link,
                    "submitted_at": submitted_at,
                },
                expected_status="accepted",
                event_type="task_submitted",
                actor_id=freelancer_id,
                occurred_at=submitted_at,
            )

    async def approve_task(self, caller_id: str, task_id: int) -> dict[str, Any]:
        """
        Approve the deliverable and pay the escrow to the freelancer.

        Error precedence:
        1. TASK_NOT_FOUND
        2. INVALID_STATUS: not 'submitted'
        3. FORBIDDEN: caller is not the client
        4. TRANSFER_FAILED: payout failed; task stays 'submitted'
        """
        client_id = self._require_caller(caller_id)
        async with self._task_lock(task_id):
            task = self._load_task(task_id)
            self._require_status(task, "submitted", "approve")

            if client_id != task["client_id"]:
                raise ServiceError(
                    "FORBIDDEN",
                    "Only the client can approve this task",
                    403,
                    {"task_id": task_id},
                )

            completed_at = to_iso(self._now())
            return await self._settle(
                task,
                task["freelancer_id"],
                {"status": "completed", "completed_at": completed_at},
                expected_status="submitted",
                event_type="task_completed",
                actor_id=client_id,
                occurred_at=completed_at,
            )

    async def dispute_task(self, caller_id: str, task_id: int) -> dict[str, Any]:
        """
        Flag the deliverable as disputed. Escrow stays held.

        Error precedence:
        1. TASK_NOT_FOUND
        2. INVALID_STATUS: not 'submitted'
        3. FORBIDDEN: caller is not the client
        """
        client_id = self._require_caller(caller_id)
        async with self._task_lock(task_id):
            task = self._load_task(task_id)
            self._require_status(task, "submitted", "dispute")

            if client_id != task["client_id"]:
                raise ServiceError(
                    "FORBIDDEN",
                    "Only the client can dispute this task",
                    403,
                    {"task_id": task_id},
                )

            disputed_at = to_iso(self._now())
            return self._commit_transition(
                task,
                {"status": "disputed", "disputed_at": disputed_at},
                expected_status="submitted",
                event_type="task_disputed",
                actor_id=client_id,
                occurred_at=disputed_at,
            )

    async def cancel_task(self, caller_id: str, task_id: int) -> dict[str, Any]:
        """
        Cancel a task nobody has accepted and refund the client.

        Error precedence:
        1. TASK_NOT_FOUND
        2. INVALID_STATUS: not 'created'
        3. FORBIDDEN: caller is not the client
        4. TRANSFER_FAILED: refund failed; task stays 'created'
        """
        client_id = self._require_caller(caller_id)
        async with self._task_lock(task_id):
            task = self._load_task(task_id)
            self._require_status(task, "created", "cancel")

            if client_id != task["client_id"]:
                raise ServiceError(
                    "FORBIDDEN",
                    "Only the client can cancel this task",
                    403,
                    {"task_id": task_id},
                )

            cancelled_at = to_iso(self._now())
            return await self._settle(
                task,
                client_id,
                {"status": "cancelled", "cancelled_at": cancelled_at},
                expected_status="created",
                event_type="task_cancelled",
                actor_id=client_id,
                occurred_at=cancelled_at,
            )

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def get_task(self, task_id: int) -> dict[str, Any]:
        """
        Get a single task by ID.

        Raises:
            ServiceError: TASK_NOT_FOUND
        """
        return self._task_to_response(self._load_task(task_id))

    def get_task_count(self) -> int:
        """Number of tasks ever created; ids run from 0 to count - 1."""
        return self._store.count_tasks()

    def list_tasks(
        self,
        client_id: str | None = None,
        freelancer_id: str | None = None,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters (AND logic), ordered by id."""
        if status is not None and status not in STATUS_CODES:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Unknown status filter: {status}",
                400,
                {},
            )
        rows = self._store.list_tasks(
            client_id=client_id,
            freelancer_id=freelancer_id,
            status=status,
        )
        return [self._task_to_response(row) for row in rows]

    def list_client_tasks(self, caller_id: str) -> list[dict[str, Any]]:
        """Tasks the caller created."""
        return self.list_tasks(client_id=self._require_caller(caller_id))

    def list_freelancer_tasks(self, caller_id: str) -> list[dict[str, Any]]:
        """Tasks the caller accepted."""
        return self.list_tasks(freelancer_id=self._require_caller(caller_id))

    def list_events(
        self,
        after: int | None = None,
        task_id: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Transition events in commit order.

        Raises:
            ServiceError: INVALID_PAYLOAD when after is outside 0..SQLITE_MAX_INTEGER
            ServiceError: TASK_NOT_FOUND when task_id names no task
        """
        if after is not None and not 0 <= after <= SQLITE_MAX_INTEGER:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"after must be between 0 and {SQLITE_MAX_INTEGER}",
                400,
                {},
            )
        if task_id is not None:
            self._load_task(task_id)
        return self._store.list_events(after=after, task_id=task_id)

    # ------------------------------------------------------------------
    # Statistics, used by the health endpoint
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return aggregate task statistics for health reporting."""
        counts: dict[str, int] = dict.fromkeys(STATUS_CODES, 0)
        for status_val, count in self._store.count_tasks_by_status().items():
            if status_val in counts:
                counts[status_val] = int(count)
        return {
            "total_tasks": self.get_task_count(),
            "tasks_by_status": counts,
            "escrow_held": self.escrow_held(),
        }

    def escrow_held(self) -> int:
        """Aggregate value still owed by the ledger across all tasks."""
        return self._store.sum_amounts(_ESCROW_HELD_STATUSES)

    def close(self) -> None:
        """Close the database connection."""
        self._store.close()
