from __future__ import annotations

import pytest

from kiosk_license_server.errors import StoreError
from kiosk_license_server.models import ValidationLog
from kiosk_license_server.offline import decode_offline_bundle
from kiosk_license_server.signing import hash_device_id, verify_signed_license
from kiosk_license_server.store import LicenseStore


def _generate(client, admin_headers, **body):
    payload = {
        "kioskName": "Kiosk 7",
        "location": {"restaurant": "Leicester Square", "country": "UK", "region": "London"},
        "country": "UK",
    }
    payload.update(body)
    r = client.post("/api/licenses/generate", json=payload, headers=admin_headers)
    assert r.status_code == 200, r.get_json()
    return r.get_json()["license"]


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    data = r.get_json()
    assert data["ok"] is True
    assert data["auditFailures"] == 0


def test_admin_endpoints_need_token(client):
    assert client.post("/api/licenses/generate", json={"kioskName": "x"}).status_code == 401
    assert client.get("/api/licenses/all", headers={"X-Admin-Token": "wrong"}).status_code == 401
    assert client.get("/api/licenses/stats/dashboard").status_code == 401


def test_bearer_token_is_accepted(client):
    r = client.get("/api/licenses/all", headers={"Authorization": "Bearer test-admin-token"})
    assert r.status_code == 200


def test_generate_license(client, admin_headers):
    lic = _generate(client, admin_headers, validityDays="30")
    assert lic["status"] == "pending"
    assert lic["licenseKey"].startswith("KFC-KIO-UK-")
    assert lic["issuedAt"] == "2025-03-01T12:00:00.000Z"
    assert lic["expiresAt"] == "2025-03-31T12:00:00.000Z"
    assert lic["location"]["region"] == "London"


def test_generate_requires_kiosk_name(client, admin_headers):
    r = client.post("/api/licenses/generate", json={}, headers=admin_headers)
    assert r.status_code == 400
    assert r.get_json()["code"] == "validation_failed"


def test_activate_and_validate_over_http(client, admin_headers, key_material):
    key = _generate(client, admin_headers)["licenseKey"]

    r = client.post("/api/licenses/activate", json={"licenseKey": key, "deviceId": "dev-A"})
    assert r.status_code == 200
    signed = r.get_json()["license"]
    assert signed["deviceId"] == hash_device_id("dev-A")
    assert verify_signed_license(signed, key_material.public_pem())

    r = client.post("/api/licenses/activate", json={"licenseKey": key, "deviceId": "dev-B"})
    assert r.status_code == 403
    assert r.get_json()["code"] == "device_mismatch"

    r = client.post("/api/licenses/validate", json={"licenseKey": key, "deviceId": "dev-A"})
    assert r.status_code == 200
    data = r.get_json()
    assert data["valid"] is True
    assert data["validatedAt"] == "2025-03-01T12:00:00.000Z"


def test_activate_missing_fields(client):
    r = client.post("/api/licenses/activate", json={"licenseKey": "x"})
    assert r.status_code == 400


def test_activate_unknown_key(client):
    r = client.post("/api/licenses/activate", json={"licenseKey": "nope", "deviceId": "dev-A"})
    assert r.status_code == 404
    assert r.get_json()["code"] == "not_found"


def test_revoke_flow(client, admin_headers):
    key = _generate(client, admin_headers)["licenseKey"]
    client.post("/api/licenses/activate", json={"licenseKey": key, "deviceId": "dev-A"})

    assert client.post(f"/api/licenses/{key}/revoke", json={}, headers=admin_headers).status_code == 400

    r = client.post(f"/api/licenses/{key}/revoke", json={"reason": "lost"}, headers=admin_headers)
    assert r.status_code == 200
    assert r.get_json()["reason"] == "lost"

    r = client.post(f"/api/licenses/{key}/revoke", json={"reason": "other"}, headers=admin_headers)
    assert r.get_json()["reason"] == "lost"
    assert r.get_json()["message"] == "License was already revoked"

    r = client.post("/api/licenses/validate", json={"licenseKey": key, "deviceId": "dev-A"})
    assert r.status_code == 403
    assert r.get_json() == {"success": False, "code": "revoked", "error": "License has been revoked", "reason": "lost"}


def test_offline_generation(client, admin_headers, key_material):
    key = _generate(client, admin_headers)["licenseKey"]
    r = client.post("/api/licenses/generate-offline", json={"licenseKey": key, "deviceId": "dev-A"},
                    headers=admin_headers)
    assert r.status_code == 200
    data = r.get_json()
    assert set(data["licenseFile"]) == {"encrypted", "iv", "authTag"}
    decoded = decode_offline_bundle(data["licenseFile"], "dev-A")
    assert decoded == data["licenseData"]
    assert verify_signed_license(decoded, key_material.public_pem())


def test_listing_detail_and_stats(client, admin_headers):
    a = _generate(client, admin_headers)["licenseKey"]
    b = _generate(client, admin_headers, country="IE", location={"country": "IE"})["licenseKey"]
    client.post("/api/licenses/activate", json={"licenseKey": a, "deviceId": "dev-A"},
                headers={"User-Agent": "kiosk/2.0"})

    r = client.get("/api/licenses/all?status=active", headers=admin_headers)
    assert [lic["licenseKey"] for lic in r.get_json()["licenses"]] == [a]

    r = client.get("/api/licenses/all?country=IE", headers=admin_headers)
    assert [lic["licenseKey"] for lic in r.get_json()["licenses"]] == [b]

    assert client.get("/api/licenses/all?status=bogus", headers=admin_headers).status_code == 400

    r = client.get(f"/api/licenses/{a}", headers=admin_headers)
    detail = r.get_json()
    assert detail["license"]["deviceIdHash"] == hash_device_id("dev-A")
    assert detail["validations"][0]["attemptKind"] == "activation"
    assert detail["validations"][0]["userAgent"] == "kiosk/2.0"

    stats = client.get("/api/licenses/stats/dashboard", headers=admin_headers).get_json()["stats"]
    assert stats["total"] == 2
    assert stats["active"] == 1


def test_delete(client, admin_headers):
    key = _generate(client, admin_headers)["licenseKey"]
    assert client.delete(f"/api/licenses/{key}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/licenses/{key}", headers=admin_headers).status_code == 404
    assert client.delete(f"/api/licenses/{key}", headers=admin_headers).status_code == 404


def test_public_key_endpoint(client, key_material):
    r = client.get("/api/licenses/keys/public")
    assert r.status_code == 200
    assert r.mimetype == "text/plain"
    assert r.get_data(as_text=True) == key_material.public_pem()


def test_store_outage_is_503_not_a_refusal(client, admin_headers, monkeypatch):
    key = _generate(client, admin_headers)["licenseKey"]

    def unavailable(self, license_key):
        raise StoreError("License store unavailable during get_by_key")

    monkeypatch.setattr(LicenseStore, "get_by_key", unavailable)
    r = client.post("/api/licenses/validate", json={"licenseKey": key, "deviceId": "dev-A"})
    assert r.status_code == 503
    assert r.get_json()["code"] == "unavailable"


@pytest.mark.parametrize("body", [
    {"deviceId": 12345},
    {"deviceId": ["dev-A"]},
    {"licenseKey": 5, "deviceId": "dev-A"},
    {"licenseKey": {"k": 1}, "deviceId": "dev-A"},
])
def test_device_calls_reject_non_string_fields(client, admin_headers, body):
    key = _generate(client, admin_headers)["licenseKey"]
    payload = {"licenseKey": key, **body}

    for path in ("/api/licenses/activate", "/api/licenses/validate"):
        r = client.post(path, json=payload)
        assert r.status_code == 400
        assert r.get_json()["code"] == "validation_failed"

    # each refused attempt is still audited once
    with client.application.app_context():
        rows = ValidationLog.query.all()
    assert len(rows) == 2
    assert not any(row.success for row in rows)


@pytest.mark.parametrize("body", [
    {"location": "London"},
    {"location": {"country": 44}},
    {"kioskName": 5},
    {"country": 5},
    {"validityDays": 10**9},
    {"validityDays": "999999999"},
])
def test_generate_rejects_badly_typed_fields(client, admin_headers, body):
    payload = {"kioskName": "Kiosk 7", **body}
    r = client.post("/api/licenses/generate", json=payload, headers=admin_headers)
    assert r.status_code == 400
    assert r.get_json()["code"] == "validation_failed"


def test_revoke_rejects_non_string_reason(client, admin_headers):
    key = _generate(client, admin_headers)["licenseKey"]
    r = client.post(f"/api/licenses/{key}/revoke", json={"reason": 5}, headers=admin_headers)
    assert r.status_code == 400
    assert r.get_json()["code"] == "validation_failed"


def test_delete_leaves_activity_trail(client, admin_headers):
    key = _generate(client, admin_headers)["licenseKey"]
    client.post(f"/api/licenses/{key}/revoke", json={"reason": "lost"}, headers=admin_headers)
    assert client.delete(f"/api/licenses/{key}", headers=admin_headers).status_code == 200

    r = client.get(f"/api/licenses/activity?key={key}", headers=admin_headers)
    assert r.status_code == 200
    entries = r.get_json()["activity"]
    assert [e["action"] for e in entries] == ["delete", "revoke", "issue"]
    deleted = entries[0]
    assert deleted["licenseKey"] == key
    assert deleted["details"]["kioskName"] == "Kiosk 7"
    assert deleted["details"]["status"] == "revoked"
    assert deleted["ipAddress"] == "127.0.0.1"
    assert deleted["createdAt"] == "2025-03-01T12:00:00.000Z"


def test_activity_log_needs_token(client):
    assert client.get("/api/licenses/activity").status_code == 401


def test_detail_includes_activity(client, admin_headers):
    key = _generate(client, admin_headers)["licenseKey"]
    client.post("/api/licenses/generate-offline", json={"licenseKey": key, "deviceId": "dev-A"},
                headers=admin_headers)

    detail = client.get(f"/api/licenses/{key}", headers=admin_headers).get_json()
    actions = [e["action"] for e in detail["activity"]]
    assert actions == ["offline", "issue"]
    assert detail["activity"][0]["details"] == {"deviceIdHash": hash_device_id("dev-A")[:12]}
