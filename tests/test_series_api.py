# tests/test_series_api.py
from http import HTTPStatus

from app.services.calendar_sync import OccurrenceEventType

SERIES_BODY = {
    "tenant_id": "tenant-1",
    "client_id": "client-42",
    "staff_id": "staff-7",
    "service_id": "svc-90837",
    "title": "Weekly therapy",
    "start_date": "2025-01-06",
    "local_start_time": "09:00:00",
    "timezone": "America/Chicago",
    "duration_minutes": 50,
    "rrule": "FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE,FR",
}


def _create(client, **overrides) -> dict:
    resp = client.post("/series", json={**SERIES_BODY, **overrides})
    assert resp.status_code == HTTPStatus.CREATED, resp.text
    return resp.json()


def _appointments(client, series_id: str, **params) -> list[dict]:
    resp = client.get(f"/series/{series_id}/appointments", params=params)
    assert resp.status_code == HTTPStatus.OK
    return resp.json()


def test_create_series_materialises_first_window(client, sync):
    body = _create(client)

    # Now is 2025-01-01; the default horizon is three months.
    assert body["generation"]["created"] == 37
    assert body["generation"]["skipped"] == 0
    assert body["series"]["active"] is True
    assert body["series"]["last_generated_until"].startswith("2025-03-31T14:00:00")

    appointments = _appointments(client, body["series"]["id"], to_date="2025-01-10")
    assert [a["start_at"][:19] for a in appointments] == [
        "2025-01-06T15:00:00",
        "2025-01-08T15:00:00",
        "2025-01-10T15:00:00",
    ]
    assert {a["status"] for a in appointments} == {"scheduled"}
    assert len(sync.events) == 37


def test_create_series_rejects_bad_rule_and_zone(client):
    bad_rule = client.post("/series", json={**SERIES_BODY, "rrule": "FREQ=SOMETIMES"})
    bad_zone = client.post("/series", json={**SERIES_BODY, "timezone": "Mars/Olympus_Mons"})
    bad_duration = client.post("/series", json={**SERIES_BODY, "duration_minutes": 0})

    assert bad_rule.status_code == HTTPStatus.UNPROCESSABLE_ENTITY
    assert bad_zone.status_code == HTTPStatus.UNPROCESSABLE_ENTITY
    assert bad_duration.status_code == HTTPStatus.UNPROCESSABLE_ENTITY
    assert client.get("/series").json() == []


def test_get_and_list_series(client):
    created = _create(client)["series"]
    _create(client, tenant_id="tenant-2", active=False)

    assert client.get(f"/series/{created['id']}").json()["rrule"] == SERIES_BODY["rrule"]
    assert client.get("/series/missing").status_code == HTTPStatus.NOT_FOUND
    assert [s["id"] for s in client.get("/series", params={"tenant_id": "tenant-1"}).json()] == [
        created["id"]
    ]
    assert len(client.get("/series", params={"only_active": "false"}).json()) == 1


def test_status_change_locks_occurrence_against_edits(client):
    series_id = _create(client)["series"]["id"]
    (wednesday,) = _appointments(client, series_id, from_date="2025-01-08", to_date="2025-01-08")

    documented = client.patch(f"/appointments/{wednesday['id']}/status", json={"status": "documented"})
    back = client.patch(f"/appointments/{wednesday['id']}/status", json={"status": "scheduled"})
    edit = client.patch(
        f"/series/{series_id}",
        params={"scope": "this_only", "occurrence_id": wednesday["id"]},
        json={"local_start_time": "10:00:00"},
    )

    assert documented.status_code == HTTPStatus.OK
    assert documented.json()["status"] == "documented"
    assert back.status_code == HTTPStatus.CONFLICT
    assert edit.status_code == HTTPStatus.CONFLICT
    assert client.get("/appointments/missing").status_code == HTTPStatus.NOT_FOUND


def test_patch_this_only_detaches(client):
    series_id = _create(client)["series"]["id"]
    (wednesday,) = _appointments(client, series_id, from_date="2025-01-08", to_date="2025-01-08")

    resp = client.patch(
        f"/series/{series_id}",
        params={"scope": "this_only", "occurrence_id": wednesday["id"]},
        json={"local_start_time": "11:00:00"},
    )

    assert resp.status_code == HTTPStatus.OK
    assert resp.json()["detached_appointment_id"] == wednesday["id"]
    moved = client.get(f"/appointments/{wednesday['id']}").json()
    assert moved["series_id"] is None
    assert moved["start_at"].startswith("2025-01-08T17:00:00")
    assert _appointments(client, series_id, from_date="2025-01-08", to_date="2025-01-08") == []


def test_patch_scope_errors(client):
    series_id = _create(client)["series"]["id"]

    missing_occurrence = client.patch(
        f"/series/{series_id}", params={"scope": "this_only"}, json={"local_start_time": "10:00:00"}
    )
    bad_rule = client.patch(f"/series/{series_id}", json={"rrule": "FREQ=SOMETIMES"})
    unknown = client.patch("/series/missing", json={"title": "x"})

    assert missing_occurrence.status_code == HTTPStatus.UNPROCESSABLE_ENTITY
    assert bad_rule.status_code == HTTPStatus.UNPROCESSABLE_ENTITY
    assert unknown.status_code == HTTPStatus.NOT_FOUND


def test_patch_entire_series_regenerates(client):
    series_id = _create(client)["series"]["id"]

    resp = client.patch(f"/series/{series_id}", json={"local_start_time": "10:00:00"})

    assert resp.status_code == HTTPStatus.OK
    body = resp.json()
    assert body["scope"] == "entire_series"
    assert body["regenerated"] is True
    assert body["removed"] == 37
    # The horizon now runs from the new anchor (Jan 6), which adds Apr 2 and Apr 4.
    assert body["generation"]["created"] == 39
    first = _appointments(client, series_id)[0]
    assert first["start_at"].startswith("2025-01-06T16:00:00")


def test_cancel_entire_series_and_reactivate(client, sync):
    series_id = _create(client)["series"]["id"]
    sync.events.clear()

    cancelled = client.post(f"/series/{series_id}/cancel", json={"scope": "entire_series"})
    assert cancelled.status_code == HTTPStatus.OK
    assert cancelled.json()["cancelled"] == 37
    assert client.get(f"/series/{series_id}").json()["active"] is False
    assert {e.event_type for e in sync.events} == {OccurrenceEventType.CANCELLED}

    reactivated = client.put(f"/series/{series_id}/active", json={"active": True})
    assert reactivated.status_code == HTTPStatus.OK
    assert reactivated.json()["active"] is True
    # Watermark already covers the default horizon.
    assert reactivated.json()["generation"]["created"] == 0
