"""Shared test helpers for JWS authentication and task lifecycle calls."""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from joserfc import jws
from joserfc.jwk import OKPKey

if TYPE_CHECKING:
    from httpx import AsyncClient, Response

INITIAL_BALANCE = 1000


def generate_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate Ed25519 keypair -> (private_key, 'ed25519:<base64_pub>')."""
    private_key = Ed25519PrivateKey.generate()
    pub_bytes = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    public_key = f"ed25519:{base64.b64encode(pub_bytes).decode()}"
    return private_key, public_key


def make_jws_token(
    private_key: Ed25519PrivateKey,
    agent_id: str,
    payload: dict[str, Any],
) -> str:
    """Create a real JWS compact token signed by the given key."""
    raw_private = private_key.private_bytes_raw()
    raw_public = private_key.public_key().public_bytes_raw()
    jwk_dict = {
        "kty": "OKP",
        "crv": "Ed25519",
        "d": base64.urlsafe_b64encode(raw_private).rstrip(b"=").decode(),
        "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
    }
    key = OKPKey.import_key(jwk_dict)
    protected = {"alg": "EdDSA", "kid": agent_id}
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return jws.serialize_compact(protected, payload_bytes, key, algorithms=["EdDSA"])


def make_fake_jws(payload: dict[str, Any], kid: str = "a-test-agent") -> str:
    """Build a structurally valid but unsigned JWS (for format-only tests)."""
    header = (
        base64.urlsafe_b64encode(json.dumps({"alg": "EdDSA", "kid": kid}).encode())
        .rstrip(b"=")
        .decode()
    )
    body = base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=").decode()
    signature = base64.urlsafe_b64encode(b"fake-signature").rstrip(b"=").decode()
    return f"{header}.{body}.{signature}"


def _decode_segment(segment: str) -> dict[str, Any]:
    padded = segment + "=" * (-len(segment) % 4)
    return json.loads(base64.urlsafe_b64decode(padded))


def extract_kid(token: str) -> str:
    """Extract the kid (agent_id) from a JWS compact token header."""
    return _decode_segment(token.split(".")[0]).get("kid", "unknown")


def extract_payload(token: str) -> dict[str, Any]:
    """Extract the payload from a JWS compact token."""
    return _decode_segment(token.split(".")[1])


def verify_locally(token: str) -> dict[str, Any]:
    """Stand-in for the Identity service's verify-jws answer."""
    return {"valid": True, "agent_id": extract_kid(token), "payload": extract_payload(token)}


def future_deadline(hours: int = 24) -> str:
    """ISO 8601 UTC deadline the given number of hours from now."""
    return (datetime.now(UTC) + timedelta(hours=hours)).isoformat()


# ---------------------------------------------------------------------------
# HTTP lifecycle helpers
# ---------------------------------------------------------------------------


async def open_account(
    client: AsyncClient,
    keypair: tuple[Ed25519PrivateKey, str],
    agent_id: str,
) -> Response:
    """Open an account via POST /accounts."""
    token = make_jws_token(keypair[0], agent_id, {"action": "open_account"})
    return await client.post("/accounts", json={"token": token})


async def create_task(
    client: AsyncClient,
    keypair: tuple[Ed25519PrivateKey, str],
    client_id: str,
    *,
    description: str = "Design a logo",
    amount: int = 100,
    deadline: str | int | None = None,
) -> Response:
    """Create a task via POST /tasks."""
    payload = {
        "action": "create_task",
        "description": description,
        "amount": amount,
        "deadline": future_deadline() if deadline is None else deadline,
    }
    token = make_jws_token(keypair[0], client_id, payload)
    return await client.post("/tasks", json={"token": token})


async def task_action(
    client: AsyncClient,
    keypair: tuple[Ed25519PrivateKey, str],
    agent_id: str,
    task_id: int,
    action: str,
    **extra: Any,
) -> Response:
    """POST a signed lifecycle action (accept, submit, approve, dispute, cancel)."""
    payload = {"action": f"{action}_task", "task_id": task_id, **extra}
    token = make_jws_token(keypair[0], agent_id, payload)
    return await client.post(f"/tasks/{task_id}/{action}", json={"token": token})


async def setup_task_in_progress(
    client: AsyncClient,
    client_keypair: tuple[Ed25519PrivateKey, str],
    client_id: str,
    freelancer_keypair: tuple[Ed25519PrivateKey, str],
    freelancer_id: str,
) -> int:
    """Create a task and have the freelancer accept it. Returns the task id."""
    created = await create_task(client, client_keypair, client_id)
    task_id = int(created.json()["task_id"])
    await task_action(client, freelancer_keypair, freelancer_id, task_id, "accept")
    return task_id


async def setup_task_in_review(
    client: AsyncClient,
    client_keypair: tuple[Ed25519PrivateKey, str],
    client_id: str,
    freelancer_keypair: tuple[Ed25519PrivateKey, str],
    freelancer_id: str,
) -> int:
    """Create, accept and submit a task. Returns the task id."""
    task_id = await setup_task_in_progress(
        client, client_keypair, client_id, freelancer_keypair, freelancer_id
    )
    await task_action(
        client,
        freelancer_keypair,
        freelancer_id,
        task_id,
        "submit",
        deliverable_link="https://example.com/deliverable",
    )
    return task_id
