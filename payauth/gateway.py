"""
Downstream settlement gateways (card / bank rail).

Once the ledger has committed a debit, the money still has to move on an
external rail. That step is a separate collaborator: it can fail or time out,
and its failure never unwinds the internal record. settlement_service retries
it and records the outcome in the record's status history.

Implementations:
  - HttpSettlementGateway: POSTs to SETTLEMENT_URL with httpx
  - MockSettlementGateway: in-process stand-in used when SETTLEMENT_URL is
    unset (development, demo, tests). It can be told to fail.
"""

import logging
from typing import Protocol

import httpx

from payauth.config import settings
from payauth.exceptions import SettlementError
from payauth.models.transaction import TransactionRecord

logger = logging.getLogger(__name__)


class SettlementGateway(Protocol):
    async def settle(self, record: TransactionRecord) -> str:
        """Settle a completed debit and return the gateway's reference."""
        ...


class HttpSettlementGateway:
    def __init__(
        self,
        base_url: str,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout if timeout is not None else settings.SETTLEMENT_TIMEOUT_SECONDS
        self.transport = transport

    async def settle(self, record: TransactionRecord) -> str:
        payload = {
            "reference": record.reference,
            "amount_minor": record.amount_minor,
            "currency": record.currency,
            "type": record.type,
            "description": record.description,
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport,
            ) as client:
                response = await client.post("/settlements", json=payload)
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SettlementError(f"Settlement of {record.reference} failed: {exc}") from exc

        reference = body.get("reference") if isinstance(body, dict) else None
        if not reference:
            raise SettlementError(f"Settlement of {record.reference} returned no reference")
        return str(reference)


class MockSettlementGateway:
    """
    Always-available fake rail.

    Args:
        fail_times: Number of calls to reject before succeeding. Use a large
            number for a rail that never comes back.
    """

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.calls = 0

    async def settle(self, record: TransactionRecord) -> str:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise SettlementError(f"Mock gateway declined {record.reference}")
        return f"MOCK-{record.reference}"


_mock_gateway = MockSettlementGateway()


def get_settlement_gateway() -> SettlementGateway:
    """FastAPI dependency selecting the configured gateway."""
    if settings.SETTLEMENT_URL:
        return HttpSettlementGateway(settings.SETTLEMENT_URL)
    return _mock_gateway
