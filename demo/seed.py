#!/usr/bin/env python3
"""
Demo seed script: populates a running PayAuth API with sample holders.

!! NOT FOR PRODUCTION !!
This script creates holders with known passwords, PINs and synthetic
biometric templates. It is intended ONLY for local demos and client
development.

Usage:
    # With the API server running on localhost:8000:
    python demo/seed.py

    # Reset the database and re-seed:
    python demo/seed.py --reset

    # Custom server URL:
    python demo/seed.py --base-url http://localhost:9000

Login credentials after seeding:
    ┌──────────────────────────────┬───────────────────┬──────┬──────────────┐
    │ Email                        │ Password          │ PIN  │ Enrolled     │
    ├──────────────────────────────┼───────────────────┼──────┼──────────────┤
    │ asha.rao@example.com         │ AshaDemo123!      │ 2468 │ face         │
    │ vikram.iyer@example.com      │ VikramDemo123!    │ 1357 │ voice        │
    │ meera.das@example.com        │ MeeraDemo123!     │ 8080 │ (PIN only)   │
    └──────────────────────────────┴───────────────────┴──────┴──────────────┘

Every payment below goes through the real authorization flow
(POST /authorizations -> /proof), so the ledger and the settlement step run
exactly as they would for a client.
"""

import argparse
import asyncio
import base64
import os
import random
import sys

import httpx
import numpy as np

BASE_URL = "http://localhost:8000"

FACE_DIMENSIONS = 128
VOICE_DIMENSIONS = 192

# ---------------------------------------------------------------------------
# Demo holders
# ---------------------------------------------------------------------------

HOLDERS = [
    {
        "email": "asha.rao@example.com",
        "password": "AshaDemo123!",
        "display_name": "Asha Rao",
        "pin": "2468",
        "enroll": "face",
        "top_up": 25_000_00,
    },
    {
        "email": "vikram.iyer@example.com",
        "password": "VikramDemo123!",
        "display_name": "Vikram Iyer",
        "pin": "1357",
        "enroll": "voice",
        "top_up": 8_000_00,
    },
    {
        "email": "meera.das@example.com",
        "password": "MeeraDemo123!",
        "display_name": "Meera Das",
        "pin": "8080",
        "enroll": None,
        "top_up": 3_500_00,
    },
]

PAYMENTS = [
    ("payment", "Chai point"),
    ("payment", "Grocery store"),
    ("recharge", "Mobile recharge"),
    ("bill_payment", "Electricity bill"),
    ("payment", "Pharmacy"),
    ("bill_payment", "Broadband bill"),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def log(msg: str) -> None:
    print(f"  {msg}")


def minor_to_rupees(amount_minor: int) -> str:
    return f"₹{amount_minor / 100:,.2f}"


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def face_embedding(seed: int) -> list[float]:
    rng = np.random.default_rng(seed)
    return rng.normal(0.0, 0.05, FACE_DIMENSIONS).round(6).tolist()


def voice_embedding(seed: int) -> str:
    rng = np.random.default_rng(seed)
    vector = rng.normal(0.0, 1.0, VOICE_DIMENSIONS).astype("<f4")
    return base64.b64encode(vector.tobytes()).decode()


def template_for(method: str, seed: int) -> dict:
    if method == "face":
        return {"embedding": face_embedding(seed)}
    return {"embedding": voice_embedding(seed)}


async def signup(client: httpx.AsyncClient, holder: dict) -> dict:
    """Sign up a holder, return {account_id, token}."""
    resp = await client.post(f"{BASE_URL}/auth/signup", json={
        "email": holder["email"],
        "password": holder["password"],
        "display_name": holder["display_name"],
    })
    resp.raise_for_status()
    data = resp.json()
    return {"account_id": data["account_id"], "token": data["token"]}


async def confirm_password(client: httpx.AsyncClient, token: str, password: str) -> None:
    resp = await client.post(
        f"{BASE_URL}/auth/confirm-password",
        json={"password": password},
        headers=auth_header(token),
    )
    resp.raise_for_status()


async def set_pin(client: httpx.AsyncClient, token: str, pin: str) -> None:
    resp = await client.put(f"{BASE_URL}/auth/pin", json={"pin": pin}, headers=auth_header(token))
    resp.raise_for_status()


async def enroll(client: httpx.AsyncClient, token: str, method: str, seed: int) -> None:
    resp = await client.post(
        f"{BASE_URL}/credentials",
        json={"type": method, "template": template_for(method, seed), "label": "Demo device"},
        headers=auth_header(token),
    )
    resp.raise_for_status()


async def add_money(client: httpx.AsyncClient, token: str, amount_minor: int, key: str) -> None:
    resp = await client.post(
        f"{BASE_URL}/accounts/me/add-money",
        json={"amount_minor": amount_minor, "idempotency_key": key},
        headers=auth_header(token),
    )
    resp.raise_for_status()


async def authorize(
    client: httpx.AsyncClient,
    token: str,
    holder: dict,
    seed: int,
    amount_minor: int,
    txn_type: str,
    description: str,
    counterparty_account_id: str | None = None,
) -> dict:
    """
    Run one payment through the authorization flow with the strongest
    offered method. Returns the proof response (or the error body).
    """
    body: dict = {"amount_minor": amount_minor, "type": txn_type, "description": description}
    if counterparty_account_id:
        body["counterparty_account_id"] = counterparty_account_id
    resp = await client.post(f"{BASE_URL}/authorizations", json=body, headers=auth_header(token))
    resp.raise_for_status()
    attempt = resp.json()
    if not attempt["candidates"]:
        return attempt

    method = attempt["candidates"][0]
    if method == "pin":
        proof = {"pin": holder["pin"]}
    else:
        proof = template_for(method, seed)

    resp = await client.post(
        f"{BASE_URL}/authorizations/{attempt['id']}/proof",
        json={"method": method, "proof": proof},
        headers=auth_header(token),
    )
    return resp.json()


async def get_balance(client: httpx.AsyncClient, token: str) -> int:
    resp = await client.get(f"{BASE_URL}/accounts/me", headers=auth_header(token))
    resp.raise_for_status()
    return resp.json()["balance_minor"]


# ---------------------------------------------------------------------------
# Seed logic
# ---------------------------------------------------------------------------

async def seed_holder(client: httpx.AsyncClient, holder: dict, seed: int) -> dict:
    print(f"\nCreating {holder['display_name']}...")
    session = await signup(client, holder)
    token = session["token"]
    log(f"Login: {holder['email']} / {holder['password']}")

    await confirm_password(client, token, holder["password"])
    await set_pin(client, token, holder["pin"])
    log(f"PIN set: {holder['pin']}")

    if holder["enroll"]:
        await enroll(client, token, holder["enroll"], seed)
        log(f"Enrolled {holder['enroll']}")

    await add_money(client, token, holder["top_up"], f"demo-opening-{seed}")
    log(f"Opening top-up: {minor_to_rupees(holder['top_up'])}")

    for txn_type, description in random.sample(PAYMENTS, k=4):
        amount = random.randint(40_00, 1_500_00)
        result = await authorize(client, token, holder, seed, amount, txn_type, description)
        state = result.get("state") or result.get("error_type")
        log(f"  {description}: {minor_to_rupees(amount)} -> {state}")

    return {**session, "holder": holder, "seed": seed}


async def seed(base_url: str) -> None:
    global BASE_URL
    BASE_URL = base_url

    print("\n========================================")
    print("  DEMO SEED: NOT FOR PRODUCTION")
    print("========================================\n")

    async with httpx.AsyncClient(timeout=30.0) as client:
        try:
            health = await client.get(f"{BASE_URL}/health")
            health.raise_for_status()
        except (httpx.ConnectError, httpx.HTTPStatusError):
            print(f"  ERROR: Cannot connect to {BASE_URL}")
            print("  Start the server first: uvicorn payauth.main:app --reload\n")
            sys.exit(1)

        seeded = [
            await seed_holder(client, holder, seed)
            for seed, holder in enumerate(HOLDERS, start=1)
        ]

        # --- Peer transfers ---
        print("\nCreating transfers...")
        for sender, recipient in zip(seeded, seeded[1:] + seeded[:1]):
            amount = random.randint(100_00, 900_00)
            result = await authorize(
                client, sender["token"], sender["holder"], sender["seed"],
                amount, "transfer",
                f"From {sender['holder']['display_name']}",
                counterparty_account_id=recipient["account_id"],
            )
            if result.get("state") == "succeeded":
                log(
                    f"{sender['holder']['display_name']} -> "
                    f"{recipient['holder']['display_name']}: {minor_to_rupees(amount)}"
                )

        print("\nBalances:")
        for entry in seeded:
            balance = await get_balance(client, entry["token"])
            log(f"{entry['holder']['display_name']:<15s} {minor_to_rupees(balance)}")

    print("\n========================================")
    print("  SEED COMPLETE: Login Credentials")
    print("========================================")
    print(f"\n  {'Email':<30s} {'Password':<18s} {'PIN'}")
    print(f"  {'─' * 30} {'─' * 18} {'─' * 4}")
    for h in HOLDERS:
        print(f"  {h['email']:<30s} {h['password']:<18s} {h['pin']}")
    print()


def reset_database() -> None:
    """Delete the SQLite database file so the server recreates it on restart."""
    db_path = os.path.join(os.path.dirname(__file__), "..", "data", "payauth.db")
    db_path = os.path.normpath(db_path)

    if os.path.exists(db_path):
        os.remove(db_path)
        print(f"\n  Deleted {db_path}")
        print("  Restart the server to recreate empty tables.\n")
    else:
        print(f"\n  No database found at {db_path}\n")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

async def main() -> None:
    parser = argparse.ArgumentParser(
        description="Demo seed script (NOT FOR PRODUCTION)",
        epilog="Creates sample holders, credentials and payments for demos.",
    )
    parser.add_argument(
        "--base-url", default="http://localhost:8000",
        help="Base URL of the running API (default: http://localhost:8000)",
    )
    parser.add_argument(
        "--reset", action="store_true",
        help="Delete the database file and exit (restart server to recreate)",
    )
    args = parser.parse_args()

    if args.reset:
        reset_database()
        return

    await seed(args.base_url)


if __name__ == "__main__":
    asyncio.run(main())
