"""End-to-end lifecycle tests through the HTTP API."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from task_escrow_service.core.state import get_app_state
from tests.helpers import (
    INITIAL_BALANCE,
    create_task,
    make_jws_token,
    setup_task_in_progress,
    setup_task_in_review,
    task_action,
)


async def _balance(client, account_id: str) -> int:
    response = await client.get(f"/accounts/{account_id}")
    return int(response.json()["balance"])


@pytest.mark.unit
async def test_accept_submit_approve_pays_freelancer(
    client, funded_accounts, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
):
    created = await create_task(client, alice_keypair, alice_agent_id, amount=300)
    task_id = created.json()["task_id"]

    accepted = await task_action(client, bob_keypair, bob_agent_id, task_id, "accept")
    assert accepted.status_code == 200
    assert accepted.json()["freelancer_id"] == bob_agent_id
    assert accepted.json()["status"] == "accepted"

    submitted = await task_action(
        client,
        bob_keypair,
        bob_agent_id,
        task_id,
        "submit",
        deliverable_link="https://example.com/logo.svg",
    )
    assert submitted.status_code == 200
    assert submitted.json()["deliverable_link"] == "https://example.com/logo.svg"

    approved = await task_action(client, alice_keypair, alice_agent_id, task_id, "approve")
    assert approved.status_code == 200
    assert approved.json()["status"] == "completed"

    assert await _balance(client, alice_agent_id) == INITIAL_BALANCE - 300
    assert await _balance(client, bob_agent_id) == INITIAL_BALANCE + 300


@pytest.mark.unit
async def test_cancel_refunds_client(client, funded_accounts, alice_keypair, alice_agent_id):
    created = await create_task(client, alice_keypair, alice_agent_id, amount=400)
    task_id = created.json()["task_id"]

    response = await task_action(client, alice_keypair, alice_agent_id, task_id, "cancel")

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert await _balance(client, alice_agent_id) == INITIAL_BALANCE


@pytest.mark.unit
async def test_dispute_holds_escrow(
    client, funded_accounts, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
):
    task_id = await setup_task_in_review(
        client, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
    )

    response = await task_action(client, alice_keypair, alice_agent_id, task_id, "dispute")

    assert response.status_code == 200
    assert response.json()["status"] == "disputed"
    assert response.json()["status_code"] == 4
    assert await _balance(client, bob_agent_id) == INITIAL_BALANCE
    health = (await client.get("/health")).json()
    assert health["escrow_held"] == 100


@pytest.mark.unit
async def test_client_cannot_accept_own_task(
    client, funded_accounts, alice_keypair, alice_agent_id
):
    created = await create_task(client, alice_keypair, alice_agent_id)

    response = await task_action(
        client, alice_keypair, alice_agent_id, created.json()["task_id"], "accept"
    )

    assert response.status_code == 403
    assert response.json()["error"] == "FORBIDDEN"
    assert response.json()["message"] == "Client cannot accept their own task"


@pytest.mark.unit
async def test_second_accept_conflicts(
    client,
    funded_accounts,
    alice_keypair,
    alice_agent_id,
    bob_keypair,
    bob_agent_id,
    carol_keypair,
    carol_agent_id,
):
    task_id = await setup_task_in_progress(
        client, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
    )

    response = await task_action(client, carol_keypair, carol_agent_id, task_id, "accept")

    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_STATUS"


@pytest.mark.unit
async def test_non_freelancer_cannot_submit(
    client,
    funded_accounts,
    alice_keypair,
    alice_agent_id,
    bob_keypair,
    bob_agent_id,
    carol_keypair,
    carol_agent_id,
):
    task_id = await setup_task_in_progress(
        client, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
    )

    response = await task_action(
        client, carol_keypair, carol_agent_id, task_id, "submit", deliverable_link="x"
    )

    assert response.status_code == 403
    assert response.json()["error"] == "FORBIDDEN"


@pytest.mark.unit
async def test_submit_without_link(
    client, funded_accounts, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
):
    task_id = await setup_task_in_progress(
        client, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
    )

    missing = await task_action(client, bob_keypair, bob_agent_id, task_id, "submit")
    assert missing.status_code == 400
    assert missing.json()["error"] == "INVALID_PAYLOAD"

    empty = await task_action(
        client, bob_keypair, bob_agent_id, task_id, "submit", deliverable_link=""
    )
    assert empty.status_code == 400
    assert empty.json()["error"] == "INVALID_DELIVERABLE"


@pytest.mark.unit
async def test_freelancer_cannot_approve(
    client, funded_accounts, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
):
    task_id = await setup_task_in_review(
        client, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
    )

    response = await task_action(client, bob_keypair, bob_agent_id, task_id, "approve")

    assert response.status_code == 403
    assert (await client.get(f"/tasks/{task_id}")).json()["status"] == "submitted"


@pytest.mark.unit
async def test_cancel_after_accept_conflicts(
    client, funded_accounts, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
):
    task_id = await setup_task_in_progress(
        client, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
    )

    response = await task_action(client, alice_keypair, alice_agent_id, task_id, "cancel")

    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_STATUS"


@pytest.mark.unit
async def test_action_on_unknown_task(client, funded_accounts, bob_keypair, bob_agent_id):
    response = await task_action(client, bob_keypair, bob_agent_id, 5, "accept")

    assert response.status_code == 404
    assert response.json()["error"] == "TASK_NOT_FOUND"


@pytest.mark.unit
async def test_token_task_id_must_match_url(
    client, funded_accounts, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
):
    await create_task(client, alice_keypair, alice_agent_id)
    await create_task(client, alice_keypair, alice_agent_id)
    token = make_jws_token(bob_keypair[0], bob_agent_id, {"action": "accept_task", "task_id": 1})

    response = await client.post("/tasks/0/accept", json={"token": token})

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PAYLOAD"
    assert (await client.get("/tasks/1")).json()["status"] == "created"


@pytest.mark.unit
async def test_token_action_must_match_endpoint(
    client, funded_accounts, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
):
    await create_task(client, alice_keypair, alice_agent_id)
    token = make_jws_token(bob_keypair[0], bob_agent_id, {"action": "cancel_task", "task_id": 0})

    response = await client.post("/tasks/0/accept", json={"token": token})

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PAYLOAD"


@pytest.mark.unit
async def test_string_task_id_in_token_is_accepted(
    client, funded_accounts, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
):
    await create_task(client, alice_keypair, alice_agent_id)
    token = make_jws_token(
        bob_keypair[0], bob_agent_id, {"action": "accept_task", "task_id": "0"}
    )

    response = await client.post("/tasks/0/accept", json={"token": token})

    assert response.status_code == 200


@pytest.mark.unit
async def test_payout_failure_keeps_task_submitted(
    client, funded_accounts, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
):
    task_id = await setup_task_in_review(
        client, alice_keypair, alice_agent_id, bob_keypair, bob_agent_id
    )
    state = get_app_state()
    state.account_book.payout = AsyncMock(side_effect=ConnectionError("ledger offline"))

    response = await task_action(client, alice_keypair, alice_agent_id, task_id, "approve")

    assert response.status_code == 502
    assert response.json()["error"] == "TRANSFER_FAILED"
    assert (await client.get(f"/tasks/{task_id}")).json()["status"] == "submitted"
    assert await _balance(client, bob_agent_id) == INITIAL_BALANCE


@pytest.mark.unit
async def test_wrong_method_on_action_route(client):
    response = await client.get("/tasks/0/approve")

    assert response.status_code == 405
    assert response.json()["error"] == "METHOD_NOT_ALLOWED"
