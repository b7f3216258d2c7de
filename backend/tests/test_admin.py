from sqlalchemy import select

from token_gateway.database import SessionLocal
from token_gateway.main import create_app
from token_gateway.models import AuditEntry
from token_gateway.provider import TokenGrant
from token_gateway.tenant import Agency, Location


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["version"] == "2.1.0"
    assert body["environment"] == "development"


def test_version(client):
    body = client.get("/version").json()
    assert set(body) == {"commit", "timestamp", "environment"}


def test_request_id_echoed(client):
    resp = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert resp.headers["x-request-id"] == "abc123"
    assert client.get("/health").headers["x-request-id"]


def test_installations_listing_hides_tokens(client, store, auth_headers):
    store.upsert(Location("LOC1"), TokenGrant("secret-access", "secret-refresh", scope="contacts.readonly"))
    store.upsert(Agency("COMP1"), TokenGrant("secret-access-2", "secret-refresh-2"))

    resp = client.get("/admin/installations", headers=auth_headers())

    assert resp.status_code == 200
    rows = resp.json()
    assert {(r["location_id"], r["agency_id"]) for r in rows} == {("LOC1", None), (None, "COMP1")}
    assert "secret" not in resp.text
    assert all("access_token" not in r and "refresh_token" not in r for r in rows)
    assert all(r["expires_at"].endswith("Z") for r in rows)


def test_admin_requires_service_token(client):
    assert client.get("/admin/installations").status_code == 401
    assert client.get("/metrics").status_code == 401
    resp = client.get("/admin/installations", headers={"Authorization": "Bearer nonsense"})
    assert resp.status_code == 401


def test_metrics(client, store, auth_headers, app):
    store.upsert(Location("LOC1"), TokenGrant("a", "r"))
    app.state.metrics.proxy_calls.labels(outcome="ok").inc(3)

    body = client.get("/metrics", headers=auth_headers()).json()

    assert body["counters"]["proxy_calls_total"] == {"ok": 3}
    assert body["installations"]["active"] == 1
    assert body["installations"]["revoked"] == 0
    assert body["uptime_s"] >= 0


def test_disconnect(client, store, auth_headers, app):
    store.upsert(Location("LOC1"), TokenGrant("a", "r"))

    resp = client.post("/oauth/disconnect", json={"location_id": "LOC1"}, headers=auth_headers())

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "Installation revoked successfully"}
    listing = client.get("/admin/installations", headers=auth_headers()).json()
    assert listing[0]["status"] == "revoked"
    with SessionLocal() as session:
        events = session.execute(select(AuditEntry.event_type)).scalars().all()
    assert events == ["revoke"]
    assert app.state.metrics.value("installation_changes", change="revoked") == 1

    again = client.post("/oauth/disconnect", json={"location_id": "LOC1"}, headers=auth_headers())
    assert again.status_code == 404
    assert again.json()["error"] == "installation_not_found"


def test_disconnect_needs_tenant(client, auth_headers):
    resp = client.post("/oauth/disconnect", json={}, headers=auth_headers())
    assert resp.status_code == 400


def test_disconnect_scoped_token_must_match(client, store, auth_headers):
    store.upsert(Agency("COMP1"), TokenGrant("a", "r"))

    resp = client.post("/oauth/disconnect", json={"agency_id": "COMP1"}, headers=auth_headers(Location("LOC1")))

    assert resp.status_code == 403
    assert resp.json()["error"] == "forbidden"


def test_disconnect_requires_service_token(client):
    resp = client.post("/oauth/disconnect", json={"location_id": "LOC1"})
    assert resp.status_code == 401


def test_prometheus_exposition(client, auth_headers, app):
    app.state.metrics.proxy_calls.labels(outcome="blocked").inc()

    assert client.get("/metrics/prometheus").status_code == 401
    resp = client.get("/metrics/prometheus", headers=auth_headers())

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert 'proxy_calls_total{outcome="blocked"} 1.0' in resp.text
    assert "# HELP oauth_callback" in resp.text


def test_metrics_are_per_app(app):
    other = create_app()
    app.state.metrics.refresh_sweeps.inc()
    assert other.state.metrics.value("refresh_sweeps") == 0
