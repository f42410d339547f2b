# tests/test_health.py
from http import HTTPStatus


def test_health_endpoint_ok(client):
    """
    Basic sanity test to verify that /health responds with 200 OK
    and has the expected JSON shape and types.
    """
    response = client.get("/health")

    assert response.status_code == HTTPStatus.OK
    data = response.json()

    assert data["status"] == "ok"
    assert data["app_name"] == "Practice Scheduler"
    assert data["environment"] == "test"
    assert data["timestamp_utc"].startswith("2025-01-01T12:00:00")


def test_health_endpoint_reports_the_injected_clock(client, clock):
    """
    The timestamp comes from the Clock dependency, not from the wall clock.
    """
    clock.advance_to(clock.now().replace(year=2026))

    response = client.get("/health")

    assert response.status_code == HTTPStatus.OK
    assert response.json()["timestamp_utc"].startswith("2026-01-01T12:00:00")
