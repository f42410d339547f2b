# tests/test_internal_auth_dependency.py
from http import HTTPStatus

from app.api.dependencies import internal_auth as auth_module


class DummySettingsProd:
    APP_ENV = "prod"
    INTERNAL_API_KEY = "supersecret"


class DummySettingsProdWithoutKey:
    APP_ENV = "prod"
    INTERNAL_API_KEY = None


def test_internal_endpoint_open_in_test_env_without_key(client):
    """
    APP_ENV='test' and no INTERNAL_API_KEY: /internal is reachable without a header.
    """
    resp = client.post("/internal/generate-all")
    assert resp.status_code == HTTPStatus.OK


def test_internal_endpoint_401_when_key_missing_in_prod(monkeypatch, client):
    """
    In non-local env (APP_ENV='prod') with INTERNAL_API_KEY set, calling an
    /internal endpoint without the X-Internal-Api-Key header should return 401.
    """
    monkeypatch.setattr(auth_module, "get_settings", lambda: DummySettingsProd())

    resp = client.post("/internal/generate-all")
    assert resp.status_code == HTTPStatus.UNAUTHORIZED
    body = resp.json()
    assert "invalid or missing" in body["detail"].lower()


def test_internal_endpoint_401_when_key_wrong_in_prod(monkeypatch, client):
    """
    Wrong key => 401.
    """
    monkeypatch.setattr(auth_module, "get_settings", lambda: DummySettingsProd())

    resp = client.post(
        "/internal/generate-all",
        headers={"X-Internal-Api-Key": "wrong-key"},
    )
    assert resp.status_code == HTTPStatus.UNAUTHORIZED
    body = resp.json()
    assert "invalid or missing" in body["detail"].lower()


def test_internal_endpoint_500_when_key_not_configured_in_prod(monkeypatch, client):
    monkeypatch.setattr(auth_module, "get_settings", lambda: DummySettingsProdWithoutKey())

    resp = client.post("/internal/generate-all", headers={"X-Internal-Api-Key": "anything"})
    assert resp.status_code == HTTPStatus.INTERNAL_SERVER_ERROR


def test_internal_endpoint_200_when_key_correct_in_prod(monkeypatch, client):
    """
    Correct key => request goes through (200).
    """
    monkeypatch.setattr(auth_module, "get_settings", lambda: DummySettingsProd())

    resp = client.post(
        "/internal/generate-all",
        headers={"X-Internal-Api-Key": "supersecret"},
    )
    assert resp.status_code == HTTPStatus.OK
    data = resp.json()
    # Empty database: nothing evaluated
    assert data["total_series_evaluated"] == 0
    assert data["entries"] == []
