"""Account endpoints for the native-currency balances backing escrow."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_escrow_service.config import get_settings
from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.core.state import get_app_state
from task_escrow_service.routers.validation import extract_token, parse_json_body
from task_escrow_service.schemas import AccountResponse

router = APIRouter()


@router.post("/accounts", status_code=201)
async def open_account(request: Request) -> JSONResponse:
    """Open an account for the token signer with the configured starting balance."""
    body = await request.body()
    data = parse_json_body(body)
    token = extract_token(data, "token")

    state = get_app_state()
    if state.token_validator is None or state.account_book is None:
        msg = "Account services not initialized"
        raise RuntimeError(msg)

    payload = await state.token_validator.validate_jws_token(token, "open_account")
    account = state.account_book.open_account(
        payload["_signer_id"],
        get_settings().accounts.initial_balance,
    )
    return JSONResponse(status_code=201, content=account)


@router.get("/accounts/{account_id}", response_model=AccountResponse)
async def get_account(account_id: str) -> dict[str, Any]:
    """Get an account's current balance."""
    state = get_app_state()
    if state.account_book is None:
        msg = "AccountBook not initialized"
        raise RuntimeError(msg)

    account = state.account_book.get_account(account_id)
    if account is None:
        raise ServiceError("ACCOUNT_NOT_FOUND", "Account not found", 404, {})
    return account


@router.get("/accounts/{account_id}/transactions")
async def get_transactions(account_id: str) -> dict[str, Any]:
    """Get an account's transaction history."""
    state = get_app_state()
    if state.account_book is None:
        msg = "AccountBook not initialized"
        raise RuntimeError(msg)

    transactions = state.account_book.get_transactions(account_id)
    return {"account_id": account_id, "transactions": transactions}
