from datetime import timedelta

import pytest
from sqlalchemy import func, select

from token_gateway.database import SessionLocal
from token_gateway.models import AuditEntry, Installation, OAuthState, utcnow
from token_gateway.provider import TokenGrant
from token_gateway.refresher import BackgroundRefresher
from token_gateway.tenant import Agency, Location
from token_gateway.token_lifecycle import needs_refresh


@pytest.fixture
def seed(store, db):
    def make(tenant, expires_in, last_refresh_ago=timedelta(hours=2)):
        row, _ = store.upsert(tenant, TokenGrant(f"access-{tenant.id}", f"refresh-{tenant.id}", expires_in=expires_in))
        row.last_token_refresh = utcnow() - last_refresh_ago
        db.commit()
        return row.id

    return make


@pytest.fixture
def refresher(settings, metrics, provider):
    return BackgroundRefresher(SessionLocal, settings, metrics, provider=provider)


def test_needs_refresh(store):
    soon, _ = store.upsert(Location("L1"), TokenGrant("a", "r", expires_in=120))
    later, _ = store.upsert(Location("L2"), TokenGrant("a", "r", expires_in=3600))
    assert needs_refresh(soon, 300)
    assert not needs_refresh(later, 300)


async def test_sweep_refreshes_only_due_installations(seed, refresher, fake_hl, metrics):
    due = seed(Location("L1"), expires_in=600)
    seed(Location("L2"), expires_in=7200)
    seed(Agency("C1"), expires_in=600, last_refresh_ago=timedelta(minutes=2))

    summary = await refresher.run_once()

    assert summary == {"due": 1, "refreshed": 1, "failed": 0}
    [form] = fake_hl.token_forms()
    assert form["refresh_token"] == "refresh-L1"
    with SessionLocal() as session:
        row = session.get(Installation, due)
        assert row.expires_at > utcnow() + timedelta(hours=23)
    assert metrics.value("token_refresh", result="success") == 1
    assert metrics.value("refresh_sweeps") == 1


async def test_one_failure_does_not_stop_the_sweep(seed, refresher, fake_hl, metrics):
    seed(Location("L1"), expires_in=600)
    seed(Agency("C1"), expires_in=600)
    fake_hl.token_responses.append((401, {"error": "invalid_grant"}))

    summary = await refresher.run_once()

    assert summary == {"due": 2, "refreshed": 1, "failed": 1}
    assert len(fake_hl.token_forms()) == 2
    assert metrics.value("token_refresh", result="failed") == 1
    with SessionLocal() as session:
        events = session.execute(select(AuditEntry.event_type)).scalars().all()
    assert sorted(events) == ["error", "token_refresh"]


async def test_revoked_installations_skipped(seed, store, refresher, fake_hl):
    seed(Location("L1"), expires_in=600)
    store.revoke(Location("L1"))

    summary = await refresher.run_once()

    assert summary["due"] == 0
    assert fake_hl.calls == []


async def test_sweep_purges_expired_replay_rows(refresher, db):
    db.add(OAuthState(state="old", client_id="c", redirect_uri="r", expires_at=utcnow() - timedelta(minutes=1)))
    db.add(OAuthState(state="new", client_id="c", redirect_uri="r", expires_at=utcnow() + timedelta(minutes=10)))
    db.commit()

    await refresher.run_once()

    with SessionLocal() as session:
        assert session.scalar(select(func.count()).select_from(OAuthState)) == 1


async def test_start_and_stop(refresher, settings):
    refresher.start()
    refresher.start()

    assert refresher.scheduler.running
    job = refresher.scheduler.get_job("token_refresh")
    assert job.trigger.interval.total_seconds() == settings.refresh_interval_s
    assert job.max_instances == 1
    assert len(refresher.scheduler.get_jobs()) == 1

    refresher.stop()
    assert not refresher.scheduler.running
