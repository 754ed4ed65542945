"""Router test fixtures with a mocked Identity service."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from task_escrow_service.app import create_app
from task_escrow_service.config import clear_settings_cache
from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.core.lifespan import lifespan
from task_escrow_service.core.state import get_app_state, reset_app_state
from tests.helpers import INITIAL_BALANCE, generate_keypair, open_account, verify_locally

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

ALICE_AGENT_ID = "a-alice-uuid"
BOB_AGENT_ID = "a-bob-uuid"
CAROL_AGENT_ID = "a-carol-uuid"


# ---------------------------------------------------------------------------
# Keypair fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def alice_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate Alice's keypair."""
    return generate_keypair()


@pytest.fixture
def bob_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate Bob's keypair."""
    return generate_keypair()


@pytest.fixture
def carol_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate Carol's keypair."""
    return generate_keypair()


@pytest.fixture
def alice_agent_id() -> str:
    """Return Alice's agent ID."""
    return ALICE_AGENT_ID


@pytest.fixture
def bob_agent_id() -> str:
    """Return Bob's agent ID."""
    return BOB_AGENT_ID


@pytest.fixture
def carol_agent_id() -> str:
    """Return Carol's agent ID."""
    return CAROL_AGENT_ID


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AsyncIterator[Any]:
    """Create a test app with temp databases and a mocked Identity service."""
    config_content = f"""\
service:
  name: "task-escrow"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / "logs"}"
database:
  path: "{tmp_path / "tasks.db"}"
accounts:
  path: "{tmp_path / "accounts.db"}"
  initial_balance: {INITIAL_BALANCE}
identity:
  base_url: "http://localhost:8001"
  verify_jws_path: "/agents/verify-jws"
  timeout_seconds: 10
request:
  max_body_size: 4096
limits:
  max_description_length: 500
  max_deliverable_link_length: 200
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)
    monkeypatch.setenv("CONFIG_PATH", str(config_path))

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Mock Identity client: by default every token verifies as its kid
        mock_identity = AsyncMock()
        mock_identity.close = AsyncMock()
        mock_identity.verify_jws = AsyncMock(side_effect=verify_locally)
        state.identity_client = mock_identity

        yield test_app

    reset_app_state()
    clear_settings_cache()


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
async def funded_accounts(
    client: AsyncClient,
    alice_keypair: tuple[Ed25519PrivateKey, str],
    bob_keypair: tuple[Ed25519PrivateKey, str],
    carol_keypair: tuple[Ed25519PrivateKey, str],
) -> None:
    """Open accounts with the starting balance for Alice, Bob and Carol."""
    for keypair, agent_id in (
        (alice_keypair, ALICE_AGENT_ID),
        (bob_keypair, BOB_AGENT_ID),
        (carol_keypair, CAROL_AGENT_ID),
    ):
        response = await open_account(client, keypair, agent_id)
        assert response.status_code == 201


# ---------------------------------------------------------------------------
# Mock override fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_identity_unavailable(app: Any) -> None:
    """Configure the Identity mock to simulate service unavailability."""
    _ = app
    state = get_app_state()
    state.identity_client.verify_jws = AsyncMock(
        side_effect=ConnectionError("Identity service unreachable")
    )


@pytest.fixture
def mock_identity_rejects(app: Any) -> None:
    """Configure the Identity mock to reject every signature."""
    _ = app
    state = get_app_state()
    state.identity_client.verify_jws = AsyncMock(
        side_effect=ServiceError("FORBIDDEN", "JWS signature verification failed", 403, {})
    )
