"""Service layer components."""

from task_escrow_service.services.account_book import AccountBook
from task_escrow_service.services.escrow_coordinator import EscrowCoordinator
from task_escrow_service.services.task_ledger import TaskLedger
from task_escrow_service.services.task_store import TaskStore
from task_escrow_service.services.token_validator import TokenValidator

__all__ = [
    "AccountBook",
    "EscrowCoordinator",
    "TaskLedger",
    "TaskStore",
    "TokenValidator",
]
