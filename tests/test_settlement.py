"""
Tests for settlement with the downstream gateway.

These tests verify:
  - Only completed external debits are settled; transfers and credits are not
  - A failing gateway is retried, then "settlement_failed" is appended while
    the record stays completed and the balance is not unwound
  - POST /transactions/{id}/settlement reconciles a failed settlement
  - Settling an already settled record is a no-op
  - A record claimed by a concurrent settle is never sent to the gateway twice
  - HttpSettlementGateway maps HTTP failures to SettlementError
"""

import uuid

import httpx
import pytest
from sqlalchemy import update

from payauth.attempts import AuthorizationDecision
from payauth.exceptions import InsufficientBalanceError, SettlementError, SettlementNotAllowedError
from payauth.gateway import HttpSettlementGateway, MockSettlementGateway
from payauth.models.credential import AssuranceLevel, AuthMethod
from payauth.models.transaction import TransactionDirection, TransactionRecord, TransactionType
from payauth.services import account_service, ledger_service, settlement_service

FUNDS = 100_000


async def pay(db, account_id, amount_minor, txn_type=TransactionType.PAYMENT):
    return await ledger_service.commit(
        db,
        account_id=account_id,
        amount_minor=amount_minor,
        direction=TransactionDirection.DEBIT,
        txn_type=txn_type,
        idempotency_key=str(uuid.uuid4()),
        decision=AuthorizationDecision(
            attempt_id=uuid.uuid4(),
            account_id=account_id,
            amount_minor=amount_minor,
            method=AuthMethod.PIN,
            assurance=AssuranceLevel.KNOWLEDGE,
        ),
    )


@pytest.fixture
def funded_record_factory(db_session, account):
    async def make(txn_type=TransactionType.PAYMENT):
        await account_service.add_money(db_session, account, FUNDS, str(uuid.uuid4()))
        record = await pay(db_session, account.id, 10_000, txn_type=txn_type)
        await db_session.commit()
        return record
    return make


class TestSettle:

    async def test_settles_payment(self, db_session, funded_record_factory):
        record = await funded_record_factory()
        gateway = MockSettlementGateway()

        await settlement_service.settle(db_session, record, gateway, backoff_seconds=0)

        assert gateway.calls == 1
        assert record.settlement_status == "settled"
        assert record.status == "completed"
        assert record.status_history[-1].status == "settled"
        assert record.status_history[-1].reason == f"gateway reference MOCK-{record.reference}"

    async def test_retries_then_settles(self, db_session, funded_record_factory):
        record = await funded_record_factory(TransactionType.BILL_PAYMENT)
        gateway = MockSettlementGateway(fail_times=2)

        await settlement_service.settle(db_session, record, gateway, max_attempts=3, backoff_seconds=0)

        assert gateway.calls == 3
        assert record.settlement_status == "settled"

    async def test_gateway_down_leaves_record_completed(self, db_session, account, funded_record_factory):
        record = await funded_record_factory()
        balance_after = record.balance_after
        gateway = MockSettlementGateway(fail_times=100)

        await settlement_service.settle(db_session, record, gateway, max_attempts=3, backoff_seconds=0)
        await db_session.commit()

        assert gateway.calls == 3
        assert record.status == "completed"
        assert record.settlement_status == "settlement_failed"
        assert record.status_history[-1].status == "settlement_failed"
        assert "Mock gateway" not in (record.status_history[-1].reason or "")
        assert account.balance_minor == balance_after

    async def test_already_settled_is_noop(self, db_session, funded_record_factory):
        record = await funded_record_factory()
        gateway = MockSettlementGateway()
        await settlement_service.settle(db_session, record, gateway, backoff_seconds=0)
        await settlement_service.settle(db_session, record, gateway, backoff_seconds=0)
        assert gateway.calls == 1

    async def test_record_held_by_another_settle_is_skipped(self, db_session, funded_record_factory):
        record = await funded_record_factory()
        # Another worker claimed the row; this session's copy still reads None
        await db_session.execute(
            update(TransactionRecord)
            .where(TransactionRecord.id == record.id)
            .values(settlement_status=settlement_service.SETTLING)
            .execution_options(synchronize_session=False)
        )
        assert record.settlement_status is None
        gateway = MockSettlementGateway()

        await settlement_service.settle(db_session, record, gateway, backoff_seconds=0)

        assert gateway.calls == 0
        assert record.settlement_status == settlement_service.SETTLING
        assert [e.status for e in record.status_history][-1] == "completed"

    async def test_failed_settlement_can_be_claimed_again(self, db_session, funded_record_factory):
        record = await funded_record_factory()
        gateway = MockSettlementGateway(fail_times=1)
        await settlement_service.settle(db_session, record, gateway, max_attempts=1, backoff_seconds=0)
        assert record.settlement_status == "settlement_failed"

        await settlement_service.settle(db_session, record, gateway, max_attempts=1, backoff_seconds=0)
        assert gateway.calls == 2
        assert record.settlement_status == "settled"

    async def test_credit_is_not_settled(self, db_session, account):
        record = await account_service.add_money(db_session, account, 1_000, "top-up")
        assert record.direction == TransactionDirection.CREDIT.value
        with pytest.raises(SettlementNotAllowedError):
            await settlement_service.settle(db_session, record, MockSettlementGateway())

    async def test_needs_settlement(self, db_session, account, funded_record_factory):
        payment = await funded_record_factory(TransactionType.RECHARGE)
        assert settlement_service.needs_settlement(payment)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await pay(db_session, account.id, FUNDS * 10)
        failed = await ledger_service.get_transaction(
            db_session, account.id, exc_info.value.transaction_id,
        )
        assert not settlement_service.needs_settlement(failed)


class TestSettlementEndpoint:
    """Tests for POST /transactions/{id}/settlement."""

    async def _pay(self, client):
        attempt = (await client.post(
            "/authorizations", json={"amount_minor": 20_000, "type": "recharge"},
        )).json()
        response = await client.post(
            f"/authorizations/{attempt['id']}/proof",
            json={"method": "pin", "proof": {"pin": "1234"}},
        )
        return response.json()["transaction"]

    async def test_background_failure_then_manual_retry(self, funded_client, settlement_gateway):
        settlement_gateway.fail_times = 3
        txn = await self._pay(funded_client)

        record = (await funded_client.get(f"/transactions/{txn['id']}")).json()
        assert record["status"] == "completed"
        assert record["settlement_status"] == "settlement_failed"

        response = await funded_client.post(f"/transactions/{txn['id']}/settlement")
        assert response.status_code == 200
        assert response.json()["settlement_status"] == "settled"
        assert [e["status"] for e in response.json()["status_history"]][-2:] == [
            "settlement_failed", "settled",
        ]

    async def test_transfer_cannot_be_settled(self, funded_client, second_account):
        attempt = (await funded_client.post(
            "/authorizations",
            json={
                "amount_minor": 1_000,
                "type": "transfer",
                "counterparty_account_id": second_account["account_id"],
            },
        )).json()
        txn = (await funded_client.post(
            f"/authorizations/{attempt['id']}/proof",
            json={"method": "pin", "proof": {"pin": "1234"}},
        )).json()["transaction"]

        response = await funded_client.post(f"/transactions/{txn['id']}/settlement")
        assert response.status_code == 409
        assert response.json()["error_type"] == "settlement_not_allowed"

    async def test_other_accounts_record(self, funded_client, second_account):
        txn = await self._pay(funded_client)
        response = await funded_client.post(
            f"/transactions/{txn['id']}/settlement", headers=second_account["headers"],
        )
        assert response.status_code == 404


class TestHttpSettlementGateway:

    async def test_error_status_raises_settlement_error(self, funded_record_factory):
        record = await funded_record_factory()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"error": "maintenance"})

        gateway = HttpSettlementGateway("http://rail.test", transport=httpx.MockTransport(handler))
        with pytest.raises(SettlementError):
            await gateway.settle(record)

    async def test_returns_gateway_reference(self, funded_record_factory):
        record = await funded_record_factory()
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            return httpx.Response(200, json={"reference": "RAIL-42"})

        gateway = HttpSettlementGateway("http://rail.test", transport=httpx.MockTransport(handler))
        reference = await gateway.settle(record)
        assert reference == "RAIL-42"
        assert seen["path"] == "/settlements"

