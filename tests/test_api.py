"""
tests/test_api.py
HTTP surface: routing, operator headers and domain error mapping.
"""

import uuid

import pytest

from config.settings import settings
from tests.factories import TODAY, operator_headers

SERVICE_PAYLOAD = {
    "name": "Archana",
    "name_local": "अर्चना",
    "category": "ARCHANA",
    "price": "500",
    "duration_minutes": 30,
    "capacity": 2,
    "time_windows": [{"start_time": "10:00", "end_time": "11:00"}],
    "max_devotees": 4,
    "walk_in": {"allowed": True, "reserved_percentage": 0},
}

DEVOTEE = {"name": "Lakshmi Narayanan", "phone": "9876543210", "party_size": 1}


async def _service_and_slot(client, **overrides):
    payload = {**SERVICE_PAYLOAD, **overrides}
    res = await client.post("/services", json=payload, headers=operator_headers())
    assert res.status_code == 201
    service = res.json()
    res = await client.post(
        "/slots/generate",
        json={"service_id": service["id"], "start_date": TODAY.isoformat(), "days": 1},
        headers=operator_headers(),
    )
    assert res.status_code == 201
    return service, res.json()[0]


async def _book(client, slot_id, **body):
    payload = {"slot_id": slot_id, "devotee": DEVOTEE, **body}
    return await client.post("/bookings", json=payload, headers=operator_headers())


@pytest.mark.asyncio
async def test_root_and_health(client, monkeypatch):
    monkeypatch.setattr(settings, "STORE_BACKEND", "memory")
    monkeypatch.setattr(settings, "EVENT_BUS", "memory")

    res = await client.get("/")
    assert res.status_code == 200
    assert res.json()["docs"] == "/docs"

    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"
    assert "X-Request-ID" in res.headers


@pytest.mark.asyncio
async def test_booking_happy_path(client, container):
    service, slot = await _service_and_slot(client)
    assert slot["status"] == "AVAILABLE"
    assert slot["version"] == 1

    res = await _book(client, slot["id"], expected_slot_version=1)
    assert res.status_code == 201
    booking = res.json()
    assert booking["status"] == "PENDING"
    assert booking["receipt_number"] == "COUNTER1-20250114-000001"
    assert booking["counter_name"] == "Main Counter"

    res = await client.post(
        f"/bookings/{booking['id']}/payment",
        json={"amount": "500", "mode": "UPI", "transaction_id": "UPI-1"},
        headers=operator_headers(),
    )
    assert res.status_code == 200
    assert res.json()["payment"]["status"] == "COLLECTED"

    res = await client.post(f"/bookings/{booking['id']}/complete", headers=operator_headers("priest-1"))
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "COMPLETED"
    assert [e["action"] for e in body["audit_log"]] == ["CREATED", "PAYMENT_COLLECTED", "COMPLETED"]

    res = await client.get(f"/slots/{slot['id']}")
    assert res.json()["booked_count"] == 1

    assert [e.type for e in container.events.events] == ["CREATED", "COLLECTED", "COMPLETED"]


@pytest.mark.asyncio
async def test_missing_operator_is_unauthorized(client):
    res = await client.post("/services", json=SERVICE_PAYLOAD)
    assert res.status_code == 401

    _, slot = await _service_and_slot(client)
    res = await client.post(
        "/bookings",
        json={"slot_id": slot["id"], "devotee": DEVOTEE},
        headers={"X-User-Id": "op-1"},
    )
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_domain_errors_map_to_status_codes(client):
    _, slot = await _service_and_slot(client, capacity=1)

    res = await _book(client, slot["id"], devotee={**DEVOTEE, "party_size": 9})
    assert res.status_code == 422
    assert res.json()["error"] == "ELIGIBILITY_ERROR"

    res = await _book(client, slot["id"], expected_slot_version=7)
    assert res.status_code == 409
    body = res.json()
    assert body["error"] == "CONCURRENT_MODIFICATION"
    assert set(body) == {"detail", "error", "request_id"}

    assert (await _book(client, slot["id"])).status_code == 201
    res = await _book(client, slot["id"])
    assert res.status_code == 409
    assert res.json()["error"] == "CAPACITY_EXCEEDED"

    res = await client.get(f"/bookings/{uuid.uuid4()}")
    assert res.status_code == 404
    assert res.json()["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_request_id_is_echoed_in_errors(client):
    res = await client.get(f"/slots/{uuid.uuid4()}", headers={"X-Request-ID": "req-42"})
    assert res.status_code == 404
    assert res.json()["request_id"] == "req-42"
    assert res.headers["X-Request-ID"] == "req-42"


@pytest.mark.asyncio
async def test_settlement_flow_and_lock(client):
    _, slot = await _service_and_slot(client, capacity=5)
    res = await _book(client, slot["id"], payment={"amount": "500", "mode": "CASH"})
    assert res.json()["status"] == "COLLECTED"
    pending = (await _book(client, slot["id"])).json()

    res = await client.post(
        "/settlements",
        json={"date": TODAY.isoformat(), "shift": "MORNING", "opening_balance": "1000", "target_revenue": "1000"},
        headers=operator_headers(),
    )
    assert res.status_code == 201
    settlement = res.json()
    assert settlement["counter_id"] == "counter1"
    assert float(settlement["system_cash_total"]) == 500
    assert settlement["achievement_percentage"] == 50.0
    assert settlement["status"] == "DRAFT"

    res = await client.post(
        f"/settlements/{settlement['id']}/submit",
        json={"physical_cash_count": "500"},
        headers=operator_headers(),
    )
    assert res.json()["status"] == "SUBMITTED"

    res = await client.post(f"/settlements/{settlement['id']}/lock", headers=operator_headers("supervisor-1"))
    assert res.status_code == 200
    assert res.json()["locked_by"] == "supervisor-1"

    res = await client.post(
        f"/bookings/{pending['id']}/cancel", json={"reason": "Changed plans"}, headers=operator_headers()
    )
    assert res.status_code == 423
    assert res.json()["error"] == "SETTLEMENT_LOCKED"

    res = await client.post(
        f"/bookings/{pending['id']}/reprint", json={"approver_id": "supervisor-1"}, headers=operator_headers()
    )
    assert res.status_code == 200
    assert res.json()["reprint_count"] == 1


@pytest.mark.asyncio
async def test_invalid_transition_is_conflict(client):
    _, slot = await _service_and_slot(client)
    booking = (await _book(client, slot["id"])).json()
    res = await client.post(f"/bookings/{booking['id']}/complete", headers=operator_headers())
    assert res.status_code == 409
    assert res.json()["error"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_counter_summary_and_search(client):
    _, slot = await _service_and_slot(client, capacity=5)
    await _book(client, slot["id"], payment={"amount": "500", "mode": "CARD", "transaction_id": "C-9"})
    await _book(client, slot["id"], devotee={**DEVOTEE, "name": "Ravi Shankar"})

    res = await client.get(f"/settlements/counters/counter1/summary?date={TODAY.isoformat()}")
    assert res.status_code == 200
    summary = res.json()
    assert summary["booking_count"] == 2
    assert float(summary["digital_collected"]) == 500
    assert summary["pending_count"] == 1

    res = await client.get("/bookings", params={"search": "ravi", "status": "PENDING"})
    assert [b["devotee"]["name"] for b in res.json()] == ["Ravi Shankar"]


@pytest.mark.asyncio
async def test_slot_listing_and_close(client):
    service, slot = await _service_and_slot(client)
    res = await client.post(f"/slots/{slot['id']}/close", json={"reason": "Festival"}, headers=operator_headers())
    assert res.json()["status"] == "CLOSED"

    res = await client.get("/slots", params={"service_id": service["id"], "date": TODAY.isoformat()})
    assert res.json() == []
    res = await client.get(
        "/slots",
        params={"service_id": service["id"], "date": TODAY.isoformat(), "include_unavailable": "true"},
    )
    assert [s["id"] for s in res.json()] == [slot["id"]]

    res = await client.post(f"/slots/{slot['id']}/close", json={}, headers=operator_headers())
    assert res.status_code == 409


@pytest.mark.asyncio
async def test_error_bodies_are_documented(client):
    schema = (await client.get("/openapi.json")).json()
    assert set(schema["components"]["schemas"]["ErrorResponse"]["properties"]) == {"detail", "error", "request_id"}
    create = schema["paths"]["/bookings"]["post"]["responses"]
    assert create["409"]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")
