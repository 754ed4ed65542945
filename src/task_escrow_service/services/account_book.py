"""Account book: native currency balances and escrow custody."""

from __future__ import annotations

import contextlib
import sqlite3
import uuid
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Any, cast

from task_escrow_service.core.exceptions import ServiceError


class AccountBook:
    """
    Manages account balances and the custody pool holding escrowed value.

    Implements the ValueTransfer port: collect() moves value from an
    account into custody, payout() moves it from custody to an account.
    Every balance mutation and its transaction log entry happen in a
    single database transaction.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    account_id TEXT PRIMARY KEY,
                    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS custody (
                    id INTEGER PRIMARY KEY CHECK (id = 0),
                    balance INTEGER NOT NULL CHECK (balance >= 0)
                );

                INSERT OR IGNORE INTO custody (id, balance) VALUES (0, 0);

                CREATE TABLE IF NOT EXISTS transactions (
                    tx_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL REFERENCES accounts(account_id),
                    type TEXT NOT NULL,
                    amount INTEGER NOT NULL CHECK (amount > 0),
                    balance_after INTEGER NOT NULL,
                    reference TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_transactions_account
                    ON transactions(account_id);
                """
            )

    def _now(self) -> str:
        """Current UTC timestamp in ISO 8601 format."""
        return datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")

    def _new_tx_id(self) -> str:
        """Generate a new transaction ID."""
        return f"tx-{uuid.uuid4()}"

    def _balance_of(self, account_id: str) -> int:
        row = self._db.execute(
            "SELECT balance FROM accounts WHERE account_id = ?",
            (account_id,),
        ).fetchone()
        if row is None:
            msg = "Account not found after update"
            raise RuntimeError(msg)
        return cast("int", row[0])

    def _log_transaction(
        self,
        account_id: str,
        tx_type: str,
        amount: int,
        balance_after: int,
        reference: str,
    ) -> str:
        tx_id = self._new_tx_id()
        self._db.execute(
            "INSERT INTO transactions "
            "(tx_id, account_id, type, amount, balance_after, reference, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (tx_id, account_id, tx_type, amount, balance_after, reference, self._now()),
        )
        return tx_id

    def open_account(self, account_id: str, initial_balance: int) -> dict[str, Any]:
        """
        Open a new account.

        Raises:
            ServiceError: INVALID_AMOUNT if initial_balance < 0.
            ServiceError: ACCOUNT_EXISTS if the account already exists.
        """
        if initial_balance < 0:
            raise ServiceError("INVALID_AMOUNT", "Initial balance must be non-negative", 400, {})

        with self._lock:
            now = self._now()
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(
                    "INSERT INTO accounts (account_id, balance, created_at) VALUES (?, ?, ?)",
                    (account_id, initial_balance, now),
                )
                if initial_balance > 0:
                    self._log_transaction(
                        account_id, "credit", initial_balance, initial_balance, "initial_balance"
                    )
                self._db.execute("COMMIT")
            except sqlite3.IntegrityError as exc:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise ServiceError(
                    "ACCOUNT_EXISTS",
                    "Account already exists for this agent",
                    409,
                    {},
                ) from exc
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

        return {"account_id": account_id, "balance": initial_balance, "created_at": now}

    def get_account(self, account_id: str) -> dict[str, Any] | None:
        """Look up an account by ID. Returns None if not found."""
        with self._lock:
            row = self._db.execute(
                "SELECT account_id, balance, created_at FROM accounts WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        if row is None:
            return None
        return {"account_id": row[0], "balance": row[1], "created_at": row[2]}

    def get_transactions(self, account_id: str) -> list[dict[str, Any]]:
        """
        Get transaction history for an account.

        Raises:
            ServiceError: ACCOUNT_NOT_FOUND.
        """
        if self.get_account(account_id) is None:
            raise ServiceError("ACCOUNT_NOT_FOUND", "Account not found", 404, {})

        with self._lock:
            cursor = self._db.execute(
                "SELECT tx_id, type, amount, balance_after, reference, timestamp "
                "FROM transactions WHERE account_id = ? ORDER BY rowid",
                (account_id,),
            )
            return [
                {
                    "tx_id": row[0],
                    "type": row[1],
                    "amount": row[2],
                    "balance_after": row[3],
                    "reference": row[4],
                    "timestamp": row[5],
                }
                for row in cursor.fetchall()
            ]

    def custody_balance(self) -> int:
        """Total value currently held in custody."""
        with self._lock:
            row = self._db.execute("SELECT balance FROM custody WHERE id = 0").fetchone()
        return int(row[0]) if row is not None else 0

    async def collect(self, payer_id: str, amount: int, reference: str) -> None:
        """
        Debit the payer and move the amount into custody.

        Raises:
            ServiceError: INVALID_AMOUNT, ACCOUNT_NOT_FOUND, INSUFFICIENT_FUNDS.
        """
        if amount <= 0:
            raise ServiceError("INVALID_AMOUNT", "Amount must be a positive integer", 400, {})

        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                cursor = self._db.execute(
                    "UPDATE accounts SET balance = balance - ? "
                    "WHERE account_id = ? AND balance >= ?",
                    (amount, payer_id, amount),
                )
                if cursor.rowcount == 0:
                    # Distinguish between not found and insufficient funds
                    if self.get_account(payer_id) is None:
                        raise ServiceError("ACCOUNT_NOT_FOUND", "Account not found", 404, {})
                    raise ServiceError(
                        "INSUFFICIENT_FUNDS",
                        "Insufficient funds to cover the escrow amount",
                        402,
                        {},
                    )
                new_balance = self._balance_of(payer_id)
                self._log_transaction(payer_id, "escrow_collect", amount, new_balance, reference)
                self._db.execute(
                    "UPDATE custody SET balance = balance + ? WHERE id = 0",
                    (amount,),
                )
                self._db.execute("COMMIT")
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

    async def payout(self, recipient_id: str, amount: int, reference: str) -> None:
        """
        Move the amount out of custody and credit the recipient.

        Raises:
            ServiceError: INVALID_AMOUNT, ACCOUNT_NOT_FOUND, CUSTODY_SHORTFALL.
        """
        if amount <= 0:
            raise ServiceError("INVALID_AMOUNT", "Amount must be a positive integer", 400, {})

        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                cursor = self._db.execute(
                    "UPDATE custody SET balance = balance - ? WHERE id = 0 AND balance >= ?",
                    (amount, amount),
                )
                if cursor.rowcount == 0:
                    raise ServiceError(
                        "CUSTODY_SHORTFALL",
                        "Custody does not hold enough value for this payout",
                        500,
                        {},
                    )
                cursor = self._db.execute(
                    "UPDATE accounts SET balance = balance + ? WHERE account_id = ?",
                    (amount, recipient_id),
                )
                if cursor.rowcount == 0:
                    raise ServiceError("ACCOUNT_NOT_FOUND", "Recipient account not found", 404, {})
                new_balance = self._balance_of(recipient_id)
                self._log_transaction(recipient_id, "escrow_payout", amount, new_balance, reference)
                self._db.execute("COMMIT")
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
