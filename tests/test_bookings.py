# Booking API test suite: submit/decide/cancel over HTTP, error mapping, listings, occupancy views,
# admin repair, and side effects delivered after the response.
from __future__ import annotations

from datetime import date, timedelta
from typing import Tuple

from fastapi.testclient import TestClient

from roomsync import models
from roomsync.db import SessionLocal
from roomsync.routes.auth import create_access_token

TOMORROW = (date.today() + timedelta(days=1)).isoformat()


# Helper: create a user and return (access_token, user JSON)
def signup(client: TestClient, email: str, password: str, role: str | None = None) -> Tuple[str, dict]:
    payload = {"email": email, "password": password}
    if role:
        payload["role"] = role
    r = client.post("/auth/signup", json=payload)
    assert r.status_code == 201, r.text
    data = r.json()
    return data["access_token"], data["user"]


# Helper: login and return (access_token, user JSON)
def login(client: TestClient, email: str, password: str) -> Tuple[str, dict]:
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    data = r.json()
    return data["access_token"], data["user"]


# Convenience header for authenticated requests
def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# Admins cannot sign up; insert one directly and mint a token for it
def admin_token() -> str:
    db = SessionLocal()
    try:
        user = models.User(email="ops@example.com", password_hash="x", role="admin")
        db.add(user)
        db.commit()
        db.refresh(user)
        return create_access_token(user=user)
    finally:
        db.close()


# Helper: property with 'rooms' available rooms owned by the authenticated landlord
def create_property(client: TestClient, token: str, name: str, rooms: int = 1) -> Tuple[dict, list]:
    r = client.post("/api/v1/properties", headers=auth_headers(token), json={"name": name})
    assert r.status_code == 201, r.text
    prop = r.json()
    created = []
    for i in range(rooms):
        r = client.post(
            f"/api/v1/properties/{prop['id']}/accommodations",
            headers=auth_headers(token),
            json={"title": f"Room {i + 1}", "price": "3500000.00"},
        )
        assert r.status_code == 201, r.text
        created.append(r.json())
    return prop, created


def create_booking(client: TestClient, token: str, accommodation_id: int, **extra) -> dict:
    """
    Helper: POST /bookings and return a simplified envelope:
      {
        "status_code": number,
        "data": JSON | text
      }
    """
    body = {"accommodation_id": accommodation_id, "requested_date": TOMORROW}
    body.update(extra)
    r = client.post("/api/v1/bookings", headers=auth_headers(token), json=body)
    return {"status_code": r.status_code, "data": (r.json() if r.headers.get("content-type", "").startswith("application/json") else r.text)}


def decide(client: TestClient, token: str, booking_id: int, decision: str):
    return client.post(
        f"/api/v1/bookings/{booking_id}/decision",
        headers=auth_headers(token),
        json={"decision": decision},
    )


def occupancy(client: TestClient, token: str, property_id: int) -> dict:
    r = client.get(f"/api/v1/properties/{property_id}/occupancy", headers=auth_headers(token))
    assert r.status_code == 200, r.text
    return r.json()


# Submit -> confirm; a second confirmation for the same single room is refused
def test_confirm_then_capacity_conflict(client: TestClient):
    landlord_token, landlord = signup(client, "host1@example.com", "changeme123", "landlord")
    prop, rooms = create_property(client, landlord_token, "Sunrise House", rooms=1)
    assert prop["total_rooms"] == 0
    tenant_token, tenant = signup(client, "guest1@example.com", "changeme123", "tenant")
    other_token, _ = signup(client, "guest1b@example.com", "changeme123", "tenant")

    res1 = create_booking(client, tenant_token, rooms[0]["id"], num_of_people=2, phone_number=" 0901234567 ")
    assert res1["status_code"] == 201, res1["data"]
    b1 = res1["data"]
    assert b1["status"] == "pending"
    assert b1["requester_id"] == tenant["id"]
    assert b1["phone_number"] == "0901234567"

    res2 = create_booking(client, other_token, rooms[0]["id"])
    assert res2["status_code"] == 201, res2["data"]
    b2 = res2["data"]

    r = decide(client, landlord_token, b1["id"], "confirmed")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["changed"] is True
    assert body["booking"]["status"] == "confirmed"
    assert body["booking"]["decided_by"] == landlord["id"]
    assert len(body["events"]) == 4

    view = occupancy(client, landlord_token, prop["id"])
    assert view == {
        "property_id": prop["id"],
        "total_rooms": 1,
        "occupied_rooms": 1,
        "vacant_rooms": 0,
        "occupancy_rate": 100,
    }

    r = decide(client, landlord_token, b2["id"], "confirmed")
    assert r.status_code == 409, r.text
    assert r.json()["detail"]["error"] == "no_longer_available"
    assert occupancy(client, landlord_token, prop["id"])["occupied_rooms"] == 1

    # The loser can still be rejected
    r = decide(client, landlord_token, b2["id"], "rejected")
    assert r.status_code == 200, r.text
    assert r.json()["booking"]["status"] == "rejected"


# Re-issuing a decision is an idempotent replay; reversing it is a conflict
def test_repeat_decision_is_idempotent(client: TestClient):
    landlord_token, _ = signup(client, "host2@example.com", "changeme123", "landlord")
    _, rooms = create_property(client, landlord_token, "Lotus Flats", rooms=2)
    tenant_token, _ = signup(client, "guest2@example.com", "changeme123", "tenant")
    booking = create_booking(client, tenant_token, rooms[1]["id"])["data"]

    r1 = decide(client, landlord_token, booking["id"], "confirmed")
    r2 = decide(client, landlord_token, booking["id"], "confirmed")
    assert r1.status_code == 200 and r2.status_code == 200, r2.text
    assert r2.json()["changed"] is False
    assert r2.json()["events"] == []

    r3 = decide(client, landlord_token, booking["id"], "rejected")
    assert r3.status_code == 409, r3.text
    detail = r3.json()["detail"]
    assert detail["error"] == "already_decided"
    assert detail["current_status"] == "confirmed"


# Cancel by the requester; deciding afterwards fails; cancel of someone else's booking is forbidden
def test_cancel_flow(client: TestClient):
    landlord_token, _ = signup(client, "host3@example.com", "changeme123", "landlord")
    prop, rooms = create_property(client, landlord_token, "Cancel Place")
    tenant_token, _ = signup(client, "guest3@example.com", "changeme123", "tenant")
    intruder_token, _ = signup(client, "guest3b@example.com", "changeme123", "tenant")
    booking = create_booking(client, tenant_token, rooms[0]["id"])["data"]

    r = client.post(f"/api/v1/bookings/{booking['id']}/cancel", headers=auth_headers(intruder_token))
    assert r.status_code == 403, r.text
    assert r.json()["detail"]["error"] == "forbidden"

    r = client.post(f"/api/v1/bookings/{booking['id']}/cancel", headers=auth_headers(tenant_token))
    assert r.status_code == 200, r.text
    assert r.json()["booking"]["status"] == "cancelled"
    assert r.json()["booking"]["cancel_reason"] == "cancelled"

    r = decide(client, landlord_token, booking["id"], "confirmed")
    assert r.status_code == 409, r.text
    assert r.json()["detail"]["error"] == "already_decided"
    assert occupancy(client, landlord_token, prop["id"])["occupied_rooms"] == 0


def test_only_owner_can_decide(client: TestClient):
    landlord_token, _ = signup(client, "host4@example.com", "changeme123", "landlord")
    other_landlord_token, _ = signup(client, "host4b@example.com", "changeme123", "landlord")
    _, rooms = create_property(client, landlord_token, "Owner Only")
    tenant_token, _ = signup(client, "guest4@example.com", "changeme123", "tenant")
    booking = create_booking(client, tenant_token, rooms[0]["id"])["data"]

    for token in (other_landlord_token, tenant_token):
        r = decide(client, token, booking["id"], "confirmed")
        assert r.status_code == 403, r.text

    # Admins may decide on any listing
    r = decide(client, admin_token(), booking["id"], "rejected")
    assert r.status_code == 200, r.text


def test_submit_validation_errors(client: TestClient):
    landlord_token, _ = signup(client, "host5@example.com", "changeme123", "landlord")
    _, rooms = create_property(client, landlord_token, "Validation Place")
    tenant_token, _ = signup(client, "guest5@example.com", "changeme123", "tenant")

    # Owner cannot book their own listing
    res = create_booking(client, landlord_token, rooms[0]["id"])
    assert res["status_code"] == 400, res["data"]
    assert res["data"]["detail"]["error"] == "validation_error"

    res = create_booking(client, tenant_token, rooms[0]["id"], num_of_people=0)
    assert res["status_code"] == 400, res["data"]

    res = create_booking(client, tenant_token, rooms[0]["id"], requested_date="2000-01-01")
    assert res["status_code"] == 400, res["data"]

    res = create_booking(client, tenant_token, 9999)
    assert res["status_code"] == 404, res["data"]

    # Decision must be confirmed or rejected
    ok = create_booking(client, tenant_token, rooms[0]["id"])["data"]
    r = decide(client, landlord_token, ok["id"], "cancelled")
    assert r.status_code == 422, r.text

    r = client.post("/api/v1/bookings", json={"accommodation_id": rooms[0]["id"], "requested_date": TOMORROW})
    assert r.status_code == 401


def test_listings_filter_by_status_and_room(client: TestClient):
    landlord_token, _ = signup(client, "host6@example.com", "changeme123", "landlord")
    _, rooms = create_property(client, landlord_token, "Listing Place", rooms=2)
    tenant_token, _ = signup(client, "guest6@example.com", "changeme123", "tenant")

    b1 = create_booking(client, tenant_token, rooms[0]["id"])["data"]
    b2 = create_booking(client, tenant_token, rooms[1]["id"])["data"]
    assert decide(client, landlord_token, b1["id"], "confirmed").status_code == 200

    r = client.get("/api/v1/bookings/me", headers=auth_headers(tenant_token))
    assert r.status_code == 200
    assert {b["id"] for b in r.json()} == {b1["id"], b2["id"]}

    r = client.get("/api/v1/bookings/me", headers=auth_headers(tenant_token), params={"status": "pending"})
    assert [b["id"] for b in r.json()] == [b2["id"]]

    r = client.get("/api/v1/bookings/owner", headers=auth_headers(landlord_token), params={"status": "confirmed"})
    assert r.status_code == 200
    assert [b["id"] for b in r.json()] == [b1["id"]]

    r = client.get(
        "/api/v1/bookings/owner",
        headers=auth_headers(landlord_token),
        params={"accommodation_id": rooms[1]["id"]},
    )
    assert [b["id"] for b in r.json()] == [b2["id"]]
    # Each request carries the room title and the requester contact
    row = r.json()[0]
    assert row["accommodation_title"] == "Room 2"
    assert row["requester_email"] == "guest6@example.com"

    # Tenants have no owner listing
    r = client.get("/api/v1/bookings/owner", headers=auth_headers(tenant_token))
    assert r.status_code == 403


def test_release_and_standalone_listing(client: TestClient):
    landlord_token, _ = signup(client, "host7@example.com", "changeme123", "landlord")
    prop, rooms = create_property(client, landlord_token, "Release Place")
    tenant_token, _ = signup(client, "guest7@example.com", "changeme123", "tenant")
    booking = create_booking(client, tenant_token, rooms[0]["id"])["data"]
    assert decide(client, landlord_token, booking["id"], "confirmed").status_code == 200

    r = client.post(f"/api/v1/accommodations/{rooms[0]['id']}/release", headers=auth_headers(tenant_token))
    assert r.status_code == 403
    r = client.post(f"/api/v1/accommodations/{rooms[0]['id']}/release", headers=auth_headers(landlord_token))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "available"
    assert occupancy(client, landlord_token, prop["id"])["occupied_rooms"] == 0

    r = client.post("/api/v1/accommodations", headers=auth_headers(landlord_token), json={"title": "Studio 9"})
    assert r.status_code == 201, r.text
    studio = r.json()
    assert studio["property_id"] is None
    b = create_booking(client, tenant_token, studio["id"])["data"]
    r = decide(client, landlord_token, b["id"], "confirmed")
    assert r.status_code == 200, r.text

    r = client.get("/api/v1/properties", headers=auth_headers(landlord_token))
    assert [p["id"] for p in r.json()] == [prop["id"]]


def test_admin_reconcile_repairs_counters(client: TestClient):
    landlord_token, _ = signup(client, "host8@example.com", "changeme123", "landlord")
    prop, _ = create_property(client, landlord_token, "Drift Place", rooms=2)

    db = SessionLocal()
    try:
        obj = db.get(models.Property, prop["id"])
        obj.total_rooms = 7
        db.add(obj)
        db.commit()
    finally:
        db.close()

    r = client.post(f"/api/v1/properties/{prop['id']}/reconcile", headers=auth_headers(landlord_token))
    assert r.status_code == 403

    token = admin_token()
    r = client.post(f"/api/v1/properties/{prop['id']}/reconcile", headers=auth_headers(token))
    assert r.status_code == 200, r.text
    assert r.json() == {"property_id": prop["id"], "repaired": True, "total_rooms": 2, "occupied_rooms": 0}

    r = client.post(f"/api/v1/properties/{prop['id']}/reconcile", headers=auth_headers(token))
    assert r.json()["repaired"] is False


# Side effects run as a background task once the response is ready
def test_confirmation_notifies_both_parties(client: TestClient):
    landlord_token, landlord = signup(client, "host9@example.com", "changeme123", "landlord")
    _, rooms = create_property(client, landlord_token, "Notify Place")
    signup(client, "guest9@example.com", "changeme123", "tenant")
    tenant_token, tenant = login(client, "guest9@example.com", "changeme123")
    booking = create_booking(client, tenant_token, rooms[0]["id"])["data"]
    assert decide(client, landlord_token, booking["id"], "confirmed").status_code == 200

    db = SessionLocal()
    try:
        notified = {n.user_id: n.template_kind for n in db.query(models.Notification).all()}
        assert notified == {tenant["id"]: "booking_confirmed", landlord["id"]: "booking_confirmed"}
        assert db.query(models.LoyaltyCredit).filter(models.LoyaltyCredit.subject_id == tenant["id"]).count() == 1
        assert db.query(models.ReputationDelta).filter(models.ReputationDelta.subject_id == landlord["id"]).count() == 1
        assert db.query(models.OutboxEvent).filter(models.OutboxEvent.status != "delivered").count() == 0
    finally:
        db.close()


def test_healthz(client: TestClient):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "redis": "disabled"}


def test_sweeper_flag_parsing(monkeypatch):
    from roomsync.main import sweeper_enabled

    monkeypatch.delenv("SWEEPER_ENABLED", raising=False)
    assert sweeper_enabled() is True
    for off in ("false", "0", " Off ", "no"):
        monkeypatch.setenv("SWEEPER_ENABLED", off)
        assert sweeper_enabled() is False
    monkeypatch.setenv("SWEEPER_ENABLED", "true")
    assert sweeper_enabled() is True
