from datetime import date, datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from reconciler import BOOKINGS
from conftest import make_booking

AUTH = {"Authorization": "Bearer id-token-1", "X-User-Id": "guest-api", "X-User-Email": "guest@example.com"}


def upcoming_booking(booking_id, **overrides):
    check_in = date.today() + timedelta(days=10)
    fields = dict(id=booking_id, guest_id="guest-api", check_in=check_in, check_out=check_in + timedelta(days=3))
    fields.update(overrides)
    return make_booking(**fields)


@pytest.fixture
def client(fake_api, monkeypatch):
    monkeypatch.setattr(main.booking_api, "_client", httpx.AsyncClient(
        base_url="http://booking-api.test/api",
        transport=httpx.MockTransport(fake_api.handler),
    ))
    with TestClient(main.app) as client:
        yield client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["flipt_connected"] is False


def test_browse_search_uses_index(client):
    response = client.post("/api/listings/search", json={})
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["mode"] == "indexed"
    assert data["search_id"]
    listing_ids = [item["id"] for item in data["items"]]
    assert "lst-5-dup" not in listing_ids
    assert "lst-6" not in listing_ids


def test_price_search_falls_back(client):
    response = client.post("/api/listings/search", json={"city": "abuja", "max_price": 40000})
    data = response.json()
    assert data["mode"] == "fallback"
    assert data["notice"]
    assert [item["id"] for item in data["items"]] == ["lst-4"]


def test_more_for_finished_search_is_skipped(client):
    search_id = client.post("/api/listings/search", json={"query": "penthouse"}).json()["search_id"]

    response = client.post(f"/api/listings/search/{search_id}/more")

    assert response.status_code == 200
    assert response.json()["skipped"] is True
    assert response.json()["items"] == []


def test_more_for_unknown_search(client):
    assert client.post("/api/listings/search/missing/more").status_code == 404


def test_get_booking(client):
    main.store.load(BOOKINGS, [upcoming_booking("bk_api_get")])

    response = client.get("/api/bookings/bk_api_get")

    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert client.get("/api/bookings/bk_api_missing").status_code == 404


def test_cancel_booking(client, fake_api):
    main.store.load(BOOKINGS, [upcoming_booking("bk_api_cancel")])

    response = client.post("/api/bookings/bk_api_cancel/cancel", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert response.json()["status"] == "cancelled"
    assert fake_api.cancel_requests[0].headers["Authorization"] == "Bearer id-token-1"

    again = client.post("/api/bookings/bk_api_cancel/cancel", headers=AUTH)
    assert again.json()["reason"] == "already_cancelled"


def test_cancel_failure_is_reported(client, fake_api):
    fake_api.cancel_status = 503
    main.store.load(BOOKINGS, [upcoming_booking("bk_api_cancel_fail")])

    response = client.post("/api/bookings/bk_api_cancel_fail/cancel", headers=AUTH)

    assert response.json()["reason"] == "request_failed"
    assert client.get("/api/bookings/bk_api_cancel_fail").json()["status"] == "pending"


def test_cancel_unknown_booking(client):
    assert client.post("/api/bookings/bk_api_nope/cancel", headers=AUTH).status_code == 404


def test_refund_booking(client):
    main.store.load(BOOKINGS, [upcoming_booking("bk_api_refund", status="paid", reference="ref_api_1")])

    response = client.post("/api/bookings/bk_api_refund/refund", headers=AUTH, json={"note": "host_cancelled"})

    assert response.json()["ok"] is True
    assert client.get("/api/bookings/bk_api_refund").json()["gateway"] == "host_cancelled"


def test_expire_stale(client):
    past = datetime.now(timezone.utc) - timedelta(hours=3)
    main.store.load(BOOKINGS, [upcoming_booking("bk_api_stale", expires_at=past)])

    response = client.post("/api/bookings/expire-stale", headers=AUTH)

    assert "bk_api_stale" in response.json()["expired"]
    assert client.get("/api/bookings/bk_api_stale").json()["status"] == "expired"


@pytest.mark.parametrize("path", [
    "/api/bookings/bk_api_guarded/cancel",
    "/api/bookings/bk_api_guarded/refund",
    "/api/bookings/expire-stale",
])
def test_booking_actions_require_token(client, fake_api, path):
    main.store.load(BOOKINGS, [upcoming_booking("bk_api_guarded", status="paid", reference="ref_api_2")])

    response = client.post(path, headers={"X-User-Id": "guest-api"})

    assert response.status_code == 401
    assert client.get("/api/bookings/bk_api_guarded").json()["status"] == "paid"
    assert fake_api.cancel_requests == []


def test_checkout_requires_user(client):
    check_in = date.today() + timedelta(days=20)
    response = client.post("/api/checkout", json={
        "listing_id": "lst-1", "check_in": check_in.isoformat(),
        "check_out": (check_in + timedelta(days=2)).isoformat(),
    })
    assert response.status_code == 401


@pytest.mark.parametrize("listing_id, status_code", [("lst-404", 404), ("lst-6", 409)])
def test_checkout_unavailable_listing(client, listing_id, status_code):
    check_in = date.today() + timedelta(days=20)
    response = client.post("/api/checkout", headers=AUTH, json={
        "listing_id": listing_id, "check_in": check_in.isoformat(),
        "check_out": (check_in + timedelta(days=2)).isoformat(),
    })
    assert response.status_code == status_code


def test_checkout_round_trip(client, fake_api):
    check_in = date.today() + timedelta(days=30)
    started = client.post("/api/checkout", headers=AUTH, json={
        "listing_id": "lst-1",
        "check_in": check_in.isoformat(),
        "check_out": (check_in + timedelta(days=2)).isoformat(),
        "guests": 2,
        "provider": "flutterwave",
    })
    assert started.status_code == 200
    checkout = started.json()
    assert checkout["amount"] == 94500
    fake_api.verify_responses["fw_881"] = {"ok": True, "tx_ref": checkout["tx_ref"]}

    returned = client.get(f"/api/checkout/{checkout['session_id']}/return", params={
        "status": "successful", "tx_ref": checkout["tx_ref"], "transaction_id": "fw_881",
    })
    assert returned.json()["received"] is True

    completed = client.post(f"/api/checkout/{checkout['session_id']}/complete", headers=AUTH)
    assert completed.status_code == 200
    outcome = completed.json()
    assert outcome["result"]["verified"] is True
    assert outcome["result"]["booking_ref"] == checkout["booking_id"]
    assert outcome["draft"]["listing"]["id"] == "lst-1"

    again = client.post(f"/api/checkout/{checkout['session_id']}/complete", headers=AUTH)
    assert again.json()["result"]["reason"] == "no_pending_checkout"


def test_return_for_unknown_checkout(client):
    assert client.get("/api/checkout/missing/return", params={"status": "successful"}).status_code == 404
