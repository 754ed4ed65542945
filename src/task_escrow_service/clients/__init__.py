"""HTTP clients for external service communication."""

from task_escrow_service.clients.identity_client import IdentityClient

__all__ = ["IdentityClient"]
