from __future__ import annotations

import asyncio
import os
import time

import pytest
from fastapi.testclient import TestClient

from conftest import BORROWER_ADDRESS, FUNDER_ADDRESS, pending
from ripplefund import main
from ripplefund.models import PayloadKind, PaymentParams, PendingContext, Session
from ripplefund.resumption import JsonFileStorage, ResumptionStore


@pytest.fixture
def client():
    if os.path.exists(main.settings.pending_store_path):
        os.remove(main.settings.pending_store_path)
    with TestClient(main.app) as test_client:
        yield test_client


@pytest.fixture
def stalled(monkeypatch):
    async def never_resolves(identifier):
        return pending()

    monkeypatch.setattr(main.xumm_service, "get_status", never_resolves)


def _wait_for_terminal(client, deadline: float = 5.0) -> dict:
    started = time.monotonic()
    while time.monotonic() - started < deadline:
        view = client.get("/api/payload").json()
        if view["state"] not in ("IDLE", "POLLING") and (
            view["session"] or view["contribution"] or view["error"]
        ):
            return view
        time.sleep(0.02)
    raise AssertionError("payload did not resolve in time")


def test_info(client):
    body = client.get("/api/info").json()
    assert body["xumm_mode"] == "mock"
    assert body["backend_mode"] == "mock"
    assert body["poll_max_attempts"] == 60


def test_sign_in_end_to_end(client):
    response = client.post("/api/signin")
    assert response.status_code == 200
    request = response.json()
    assert request["kind"] == "SIGN_IN"
    assert request["deep_link"].endswith(request["identifier"])

    view = _wait_for_terminal(client)
    assert view["identifier"] == request["identifier"]
    assert view["state"] == "SIGNED"
    assert view["session"]["wallet_address"] == main.settings.mock_signer_account
    assert view["error"] is None


def test_second_sign_in_conflicts_until_cancelled(client, stalled):
    first = client.post("/api/signin")
    assert first.status_code == 200

    assert client.post("/api/signin").status_code == 409
    assert client.get("/api/payload").json()["identifier"] == first.json()["identifier"]

    assert client.post("/api/payload/cancel").json() == {"cancelled": True}
    view = client.get("/api/payload").json()
    assert view["state"] == "ABANDONED"
    assert view["error_type"] == "PayloadAbandonedError"

    assert client.post("/api/payload/cancel").json() == {"cancelled": False}
    assert client.post("/api/signin").status_code == 200
    client.post("/api/payload/cancel")


def test_payment_for_unknown_loan_is_rejected(client):
    response = client.post(
        "/api/payments",
        json={
            "loan_id": "no-such-loan",
            "amount_xrp": 10,
            "funder_address": FUNDER_ADDRESS,
            "user_id": "user-1",
            "wallet_address": FUNDER_ADDRESS,
        },
    )
    assert response.status_code == 400
    assert "no-such-loan" in response.json()["detail"]


def test_payment_with_invalid_amount_is_rejected(client):
    response = client.post(
        "/api/payments",
        json={
            "loan_id": "loan-1",
            "amount_xrp": 0,
            "funder_address": FUNDER_ADDRESS,
            "user_id": "user-1",
            "wallet_address": FUNDER_ADDRESS,
        },
    )
    assert response.status_code == 422


def test_payment_records_contribution(client):
    main.backend.add_loan("loan-api", "borrower-1", BORROWER_ADDRESS)
    response = client.post(
        "/api/payments",
        json={
            "loan_id": "loan-api",
            "amount_xrp": 25,
            "funder_address": FUNDER_ADDRESS,
            "user_id": "user-1",
            "wallet_address": FUNDER_ADDRESS,
        },
    )
    assert response.status_code == 200
    assert response.json()["kind"] == "PAYMENT"

    view = _wait_for_terminal(client)
    contribution = view["contribution"]
    assert view["state"] == "SIGNED"
    assert contribution["loan_id"] == "loan-api"
    assert contribution["funder_id"] == "user-1"
    assert contribution["amount"] == 25
    assert contribution["tx_hash"]


def test_payment_from_another_wallet_is_rejected(client):
    main.backend.add_loan("loan-api", "borrower-1", BORROWER_ADDRESS)
    response = client.post(
        "/api/payments",
        json={
            "loan_id": "loan-api",
            "amount_xrp": 25,
            "funder_address": BORROWER_ADDRESS,
            "user_id": "user-1",
            "wallet_address": FUNDER_ADDRESS,
        },
    )
    assert response.status_code == 400
    assert "not the signed-in wallet" in response.json()["detail"]


def test_pending_payment_resumes_as_payment_on_startup():
    if os.path.exists(main.settings.pending_store_path):
        os.remove(main.settings.pending_store_path)
    context = PendingContext(
        kind=PayloadKind.PAYMENT,
        session=Session(user_id="user-1", wallet_address=FUNDER_ADDRESS),
        params=PaymentParams(
            loan_id="loan-api",
            funder_id="user-1",
            funder_address=FUNDER_ADDRESS,
            destination=BORROWER_ADDRESS,
            amount_xrp=25,
        ),
    )
    store = ResumptionStore(JsonFileStorage(main.settings.pending_store_path))
    asyncio.run(store.set("left-by-previous-process", context))

    with TestClient(main.app) as client:
        view = client.get("/api/payload").json()
        assert view["identifier"] == "left-by-previous-process"
        assert view["kind"] == "PAYMENT"
        client.post("/api/payload/cancel")
