"""
Tests for reading the ledger over HTTP.

These tests verify:
  - Transactions are listed newest first, with their status history
  - Filtering by type, status and direction, and pagination
  - Declined debits are listed alongside completed ones (audit trail)
  - Text, date-range and amount filters narrow the listing
  - Period statistics total completed records by type and method
  - A holder never sees another holder's records
"""

from datetime import datetime, timedelta, timezone

import pytest

from payauth.services.ledger_service import period_start
from payauth.time_utils import utcnow


def iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


async def pay(client, amount_minor, txn_type="payment", description=None):
    attempt = (await client.post(
        "/authorizations",
        json={"amount_minor": amount_minor, "type": txn_type, "description": description},
    )).json()
    return await client.post(
        f"/authorizations/{attempt['id']}/proof",
        json={"method": "pin", "proof": {"pin": "1234"}},
    )


class TestTransactionListing:

    async def test_list_newest_first(self, funded_client):
        await pay(funded_client, 1_000)
        await pay(funded_client, 2_000, "recharge")

        response = await funded_client.get("/transactions")
        assert response.status_code == 200
        types = [t["type"] for t in response.json()]
        assert types == ["recharge", "payment", "add_money"]

    async def test_filter_by_type(self, funded_client):
        await pay(funded_client, 1_000)
        await pay(funded_client, 2_000, "bill_payment")

        response = await funded_client.get("/transactions", params={"type": "bill_payment"})
        data = response.json()
        assert len(data) == 1
        assert data[0]["amount_minor"] == 2_000

    async def test_filter_by_direction(self, funded_client):
        await pay(funded_client, 1_000)
        credits = (await funded_client.get("/transactions", params={"direction": "credit"})).json()
        debits = (await funded_client.get("/transactions", params={"direction": "debit"})).json()
        assert [t["type"] for t in credits] == ["add_money"]
        assert [t["type"] for t in debits] == ["payment"]

    async def test_declined_debit_is_listed(self, funded_client):
        response = await pay(funded_client, 600_000)
        assert response.status_code == 422

        failed = (await funded_client.get("/transactions", params={"status": "failed"})).json()
        assert len(failed) == 1
        assert failed[0]["failure_reason"] == "insufficient_balance"
        assert [e["status"] for e in failed[0]["status_history"]] == ["pending", "failed"]

    async def test_pagination(self, funded_client):
        for amount in (100, 200, 300):
            await pay(funded_client, amount)

        page = (await funded_client.get("/transactions", params={"limit": 2, "offset": 1})).json()
        assert [t["amount_minor"] for t in page] == [200, 100]

    async def test_limit_is_bounded(self, funded_client):
        response = await funded_client.get("/transactions", params={"limit": 1000})
        assert response.status_code == 422


class TestSingleTransaction:

    async def test_get(self, funded_client):
        txn = (await pay(funded_client, 4_200)).json()["transaction"]
        response = await funded_client.get(f"/transactions/{txn['id']}")
        assert response.status_code == 200
        data = response.json()
        assert data["reference"] == txn["reference"]
        assert data["balance_before"] - data["balance_after"] == 4_200

    async def test_unknown(self, funded_client):
        response = await funded_client.get("/transactions/00000000-0000-0000-0000-000000000000")
        assert response.status_code == 404


class TestTransactionIsolation:

    async def test_other_holder_sees_nothing(self, funded_client, second_account):
        txn = (await pay(funded_client, 1_000)).json()["transaction"]
        other = second_account["headers"]

        assert (await funded_client.get("/transactions", headers=other)).json() == []
        response = await funded_client.get(f"/transactions/{txn['id']}", headers=other)
        assert response.status_code == 404


class TestTransactionSearch:

    async def test_text_matches_description(self, funded_client):
        await pay(funded_client, 1_000, description="Grocery store")
        await pay(funded_client, 2_000, "bill_payment", description="Electricity bill")

        data = (await funded_client.get("/transactions", params={"q": "GROCERY"})).json()
        assert [t["amount_minor"] for t in data] == [1_000]

    async def test_text_matches_reference(self, funded_client):
        txn = (await pay(funded_client, 1_500)).json()["transaction"]
        await pay(funded_client, 2_500)

        data = (await funded_client.get("/transactions", params={"q": txn["reference"]})).json()
        assert [t["id"] for t in data] == [txn["id"]]

    async def test_amount_range(self, funded_client):
        for amount in (100, 200, 300):
            await pay(funded_client, amount)

        data = (await funded_client.get(
            "/transactions", params={"min_amount_minor": 150, "max_amount_minor": 300},
        )).json()
        assert [t["amount_minor"] for t in data] == [300, 200]

    async def test_date_range(self, funded_client):
        await pay(funded_client, 1_000)
        hour_ago = iso(utcnow() - timedelta(hours=1))
        hour_ahead = iso(utcnow() + timedelta(hours=1))

        everything = (await funded_client.get(
            "/transactions", params={"created_from": hour_ago, "created_to": hour_ahead},
        )).json()
        assert len(everything) == 2

        future = (await funded_client.get("/transactions", params={"created_from": hour_ahead})).json()
        assert future == []

    async def test_filters_combine(self, funded_client):
        await pay(funded_client, 600_000, description="Laptop")
        await pay(funded_client, 1_000, description="Laptop sleeve")

        data = (await funded_client.get(
            "/transactions", params={"q": "laptop", "status": "completed"},
        )).json()
        assert [t["description"] for t in data] == ["Laptop sleeve"]


class TestTransactionStats:
    """Tests for GET /transactions/stats."""

    async def test_month_totals(self, funded_client):
        await pay(funded_client, 1_000)
        await pay(funded_client, 2_000, "recharge")
        await pay(funded_client, 600_000)  # declined

        response = await funded_client.get("/transactions/stats")
        assert response.status_code == 200
        data = response.json()
        assert data["period"] == "month"
        assert data["total_transactions"] == 4
        assert data["total_spent_minor"] == 3_000
        assert data["total_received_minor"] == 500_000
        assert data["by_type"] == {
            "add_money": {"count": 1, "amount_minor": 500_000},
            "payment": {"count": 1, "amount_minor": 1_000},
            "recharge": {"count": 1, "amount_minor": 2_000},
        }
        assert data["by_auth_method"] == {
            "unauthenticated": {"count": 1, "amount_minor": 500_000},
            "pin": {"count": 2, "amount_minor": 3_000},
        }

    async def test_every_period(self, funded_client):
        for period in ("day", "week", "month", "year"):
            data = (await funded_client.get("/transactions/stats", params={"period": period})).json()
            assert data["total_received_minor"] == 500_000

    async def test_unknown_period(self, funded_client):
        response = await funded_client.get("/transactions/stats", params={"period": "decade"})
        assert response.status_code == 422

    async def test_empty_account(self, authenticated_client):
        data = (await authenticated_client.get("/transactions/stats")).json()
        assert data["total_transactions"] == 0
        assert data["total_spent_minor"] == 0
        assert data["by_type"] == {}

    async def test_other_holder_not_counted(self, funded_client, second_account):
        await pay(funded_client, 1_000)
        data = (await funded_client.get(
            "/transactions/stats", headers=second_account["headers"],
        )).json()
        assert data["total_transactions"] == 0


class TestPeriodStart:

    NOW = datetime(2026, 10, 19, 15, 30, tzinfo=timezone.utc)

    def test_calendar_periods(self):
        assert period_start("day", self.NOW) == datetime(2026, 10, 19, tzinfo=timezone.utc)
        assert period_start("month", self.NOW) == datetime(2026, 10, 1, tzinfo=timezone.utc)
        assert period_start("year", self.NOW) == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_week_is_rolling(self):
        assert period_start("week", self.NOW) == self.NOW - timedelta(days=7)

    def test_unknown(self):
        with pytest.raises(ValueError):
            period_start("decade", self.NOW)
