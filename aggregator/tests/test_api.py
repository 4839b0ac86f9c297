"""
Tests for the event/read API.

Validates bearer authentication, event batch handling and limits, the
totals and breakdown reads, manual actions and the unauthenticated health
check.

CHANGELOG:
- 2026-10-11: Initial creation (STORY-113)

TODO:
- None
"""

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from aggregator.src.api.app import create_app
from aggregator.src.api.auth import BearerAuth, parse_api_tokens, verify_bearer_token
from aggregator.src.attributes import AttributeStore
from aggregator.src.engine import AccrualEngine
from aggregator.src.models import DeviceCatalog, EstimatedConfig, MeterConfig
from aggregator.src.price import FixedPriceSource
from aggregator.src.service import EnergyService

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

T0 = datetime(2026, 10, 14, 12, 0, tzinfo=UTC)
AUTH_HEADER = {"Authorization": "Bearer test-token-abc"}
EVENTS_URL = "/v1/events"


def _make_service() -> EnergyService:
    attributes = AttributeStore()
    engine = AccrualEngine(price_source=FixedPriceSource(Decimal("2.0")), reader=attributes)
    catalog = DeviceCatalog(
        meters=[MeterConfig(device_id="sensor.meter_a")],
        estimated=[EstimatedConfig(device_id="light.bulb_b", max_w=Decimal("10"))],
    )
    engine.sync_devices(catalog, T0)
    engine.prime_price(T0)
    return EnergyService(engine=engine, attributes=attributes, catalog=catalog, clock=lambda: T0)


@pytest.fixture()
def client() -> TestClient:
    auth = BearerAuth({"test-token-abc": "bridge"})
    app = create_app(_make_service(), auth, max_events=3, max_request_bytes=2048)
    return TestClient(app)


def _event(device_id: str, attribute: str, value: object) -> dict:
    return {"device_id": device_id, "attribute": attribute, "value": value}


# ---------------------------------------------------------------------------
# Token parsing
# ---------------------------------------------------------------------------


class TestTokens:
    def test_parse_pairs(self) -> None:
        assert parse_api_tokens(" tok-a : bridge , tok-b:ui") == {"tok-a": "bridge", "tok-b": "ui"}

    def test_parse_skips_malformed(self) -> None:
        assert parse_api_tokens("no-colon,tok:client,:empty") == {"tok": "client"}

    def test_parse_empty(self) -> None:
        assert parse_api_tokens("   ") == {}

    def test_verify(self) -> None:
        token_map = {"tok": "bridge"}
        assert verify_bearer_token("tok", token_map) == "bridge"
        assert verify_bearer_token("other", token_map) is None
        assert verify_bearer_token("", token_map) is None


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuth:
    def test_missing_token_401(self, client: TestClient) -> None:
        response = client.get("/v1/totals")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    def test_invalid_token_401(self, client: TestClient) -> None:
        response = client.post(EVENTS_URL, json={"events": []}, headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_health_needs_no_token(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# POST /v1/events
# ---------------------------------------------------------------------------


class TestEvents:
    def test_batch_counts(self, client: TestClient) -> None:
        response = client.post(
            EVENTS_URL,
            json={
                "events": [
                    _event("sensor.meter_a", "energy", 10),
                    _event("sensor.other", "energy", 1),
                    {"value": 3},
                ]
            },
            headers=AUTH_HEADER,
        )
        assert response.status_code == 200
        assert response.json() == {"accepted": 1, "ignored": 1, "rejected": 1}

    def test_events_update_totals(self, client: TestClient) -> None:
        client.post(
            EVENTS_URL,
            json={"events": [_event("sensor.meter_a", "energy", 10), _event("sensor.meter_a", "energy", 12)]},
            headers=AUTH_HEADER,
        )
        body = client.get("/v1/totals", headers=AUTH_HEADER).json()
        assert Decimal(body["today_energy"]) == Decimal("2")
        assert Decimal(body["today_cost"]) == Decimal("4")

    def test_empty_batch(self, client: TestClient) -> None:
        response = client.post(EVENTS_URL, json={"events": []}, headers=AUTH_HEADER)
        assert response.status_code == 200
        assert response.json() == {"accepted": 0, "ignored": 0, "rejected": 0}

    def test_malformed_payload_422(self, client: TestClient) -> None:
        response = client.post(EVENTS_URL, json={"samples": []}, headers=AUTH_HEADER)
        assert response.status_code == 422

    def test_invalid_json_422(self, client: TestClient) -> None:
        response = client.post(
            EVENTS_URL,
            content=b"{not json",
            headers={**AUTH_HEADER, "Content-Type": "application/json"},
        )
        assert response.status_code == 422

    def test_too_many_events_413(self, client: TestClient) -> None:
        events = [_event("sensor.meter_a", "energy", i) for i in range(4)]
        response = client.post(EVENTS_URL, json={"events": events}, headers=AUTH_HEADER)
        assert response.status_code == 413

    def test_body_too_large_413(self, client: TestClient) -> None:
        events = [_event("sensor.meter_a", "note", "x" * 1000) for _ in range(3)]
        response = client.post(EVENTS_URL, json={"events": events}, headers=AUTH_HEADER)
        assert response.status_code == 413


# ---------------------------------------------------------------------------
# Reads and actions
# ---------------------------------------------------------------------------


class TestReadsAndActions:
    def test_totals_shape(self, client: TestClient) -> None:
        response = client.get("/v1/totals", headers=AUTH_HEADER)
        assert response.status_code == 200
        body = response.json()
        assert body["currency"] == "SEK"
        assert body["label"] == "Energy Summary"
        assert Decimal(body["current_price"]) == Decimal("2.000")

    def test_breakdown_sorted(self, client: TestClient) -> None:
        response = client.get("/v1/breakdown", headers=AUTH_HEADER)
        assert response.status_code == 200
        rows = response.json()
        assert [row["device_id"] for row in rows] == ["light.bulb_b", "sensor.meter_a"]
        assert rows[0]["kind"] == "estimated"
        assert rows[1]["max_power_w"] is None

    def test_reset_today(self, client: TestClient) -> None:
        client.post(
            EVENTS_URL,
            json={"events": [_event("sensor.meter_a", "energy", 1), _event("sensor.meter_a", "energy", 2)]},
            headers=AUTH_HEADER,
        )
        body = client.post("/v1/actions/reset-today", headers=AUTH_HEADER).json()
        assert Decimal(body["today_cost"]) == 0
        assert Decimal(body["month_cost"]) == Decimal("2")

    def test_reset_month(self, client: TestClient) -> None:
        response = client.post("/v1/actions/reset-month", headers=AUTH_HEADER)
        assert response.status_code == 200
        assert Decimal(response.json()["month_cost"]) == 0

    def test_push(self, client: TestClient) -> None:
        response = client.post("/v1/actions/push", headers=AUTH_HEADER)
        assert response.status_code == 200

    def test_actions_need_token(self, client: TestClient) -> None:
        assert client.post("/v1/actions/push").status_code == 401
