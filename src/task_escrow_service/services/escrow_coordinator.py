"""Escrow operation coordination for task lifecycle transitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from task_escrow_service.core.ports import ValueTransfer


class EscrowCoordinator:
    """Moves escrowed value through the value-transfer backend."""

    def __init__(self, value_transfer: ValueTransfer) -> None:
        self._value_transfer = value_transfer
        self._logger = get_logger(__name__)

    async def collect(self, payer_id: str, amount: int, escrow_ref: str) -> None:
        """
        Take the attached value from the payer into custody.

        Backend ServiceErrors (e.g. INSUFFICIENT_FUNDS) propagate unchanged.
        Raises ServiceError("TRANSFER_FAILED", ..., 502) on any other failure.
        """
        try:
            await self._value_transfer.collect(payer_id, amount, escrow_ref)
        except ServiceError:
            raise
        except Exception as exc:
            self._logger.warning(
                "Escrow collection failed",
                extra={"payer_id": payer_id, "escrow_ref": escrow_ref, "error": str(exc)},
            )
            raise ServiceError(
                "TRANSFER_FAILED",
                "Could not collect the escrow amount",
                502,
                {},
            ) from exc

    async def release(self, recipient_id: str, amount: int, escrow_ref: str) -> None:
        """
        Pay the escrowed value out to the recipient.

        Every failure, including backend ServiceErrors, surfaces as
        ServiceError("TRANSFER_FAILED", ..., 502); the backend's own
        error code is kept in details["reason"].
        """
        try:
            await self._value_transfer.payout(recipient_id, amount, escrow_ref)
        except Exception as exc:
            reason = exc.error if isinstance(exc, ServiceError) else type(exc).__name__
            self._logger.warning(
                "Escrow release failed",
                extra={
                    "recipient_id": recipient_id,
                    "escrow_ref": escrow_ref,
                    "reason": reason,
                },
            )
            raise ServiceError(
                "TRANSFER_FAILED",
                "Escrow payout could not be delivered",
                502,
                {"reason": reason},
            ) from exc
