"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from task_escrow_service.clients.identity_client import IdentityClient
from task_escrow_service.config import get_settings
from task_escrow_service.core.state import init_app_state
from task_escrow_service.logging import get_logger, setup_logging
from task_escrow_service.services.account_book import AccountBook
from task_escrow_service.services.escrow_coordinator import EscrowCoordinator
from task_escrow_service.services.task_ledger import TaskLedger
from task_escrow_service.services.task_store import TaskStore
from task_escrow_service.services.token_validator import TokenValidator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    # Account book doubles as the value-transfer backend for escrow custody
    account_book = AccountBook(db_path=settings.accounts.path)
    state.account_book = account_book
    escrow_coordinator = EscrowCoordinator(value_transfer=account_book)
    state.escrow_coordinator = escrow_coordinator

    # Initialize IdentityClient (HTTP client for JWS verification)
    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        verify_jws_path=settings.identity.verify_jws_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client
    state.token_validator = TokenValidator(identity_client=identity_client)

    store = TaskStore(db_path=settings.database.path)
    task_ledger = TaskLedger(
        store=store,
        escrow_coordinator=escrow_coordinator,
        max_description_length=settings.limits.max_description_length,
        max_deliverable_link_length=settings.limits.max_deliverable_link_length,
    )
    state.task_ledger = task_ledger

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "accounts_path": settings.accounts.path,
            "identity_base_url": settings.identity.base_url,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    task_ledger.close()
    account_book.close()
    await identity_client.close()
