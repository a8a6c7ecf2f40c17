"""Tests for the scheduled sync jobs.

WHAT:
    Batch runs across connections with fake platform clients.
WHY:
    A single broken account must never stop every other account from syncing.
REFERENCES:
    - adpulse/services/sync_scheduler.py
"""

from datetime import date

from adpulse.models import ConnectionStatus, InsightDaily, LevelEnum, SyncJob, SyncJobTypeEnum
from adpulse.services import sync_scheduler
from adpulse.services.cache import RedisTTLCache
from adpulse.services.sync_scheduler import run_gap_backfill, run_scheduled_sync

TODAY = date(2025, 3, 10)


def _run(session_factory, settings, cipher, meta_client, google_client, mode=SyncJobTypeEnum.daily, cache=None):
    return run_scheduled_sync(
        session_factory,
        settings,
        mode,
        cipher=cipher,
        meta_client_factory=lambda token: meta_client,
        google_client_factory=lambda connection, refresh_token: google_client,
        cache=cache,
        today=TODAY,
    )


def test_syncs_every_active_connection(
    session_factory, settings, cipher, meta_connection, google_connection, fake_meta_client, fake_google_client
):
    results = _run(session_factory, settings, cipher, fake_meta_client, fake_google_client)

    assert results == {
        str(meta_connection.id): "completed",
        str(google_connection.id): "completed",
    }
    assert fake_meta_client.calls
    assert fake_google_client.calls

    db = session_factory()
    try:
        assert db.query(SyncJob).count() == 2
    finally:
        db.close()


def test_skips_expired_and_reconnect_connections(
    test_db_session, session_factory, settings, cipher, meta_connection, google_connection,
    fake_meta_client, fake_google_client,
):
    meta_connection.status = ConnectionStatus.token_expired
    google_connection.requires_reconnect = True
    test_db_session.commit()

    results = _run(session_factory, settings, cipher, fake_meta_client, fake_google_client)

    assert results == {}
    assert fake_meta_client.calls == []
    assert fake_google_client.calls == []


def test_one_failure_does_not_stop_the_batch(
    session_factory, settings, cipher, meta_connection, google_connection, fake_meta_client, fake_google_client
):
    fake_meta_client.error = RuntimeError("Meta is down")

    results = _run(session_factory, settings, cipher, fake_meta_client, fake_google_client)

    assert results[str(meta_connection.id)].startswith("failed")
    assert results[str(google_connection.id)] == "completed"


def test_intraday_mode_requests_today(
    session_factory, settings, cipher, meta_connection, fake_meta_client, fake_google_client
):
    _run(session_factory, settings, cipher, fake_meta_client, fake_google_client, mode=SyncJobTypeEnum.intraday)

    assert {call[2] for call in fake_meta_client.calls} == {"2025-03-10"}


def test_gap_backfill_covers_missing_days(
    session_factory, settings, cipher, meta_connection, fake_meta_client, fake_google_client
):
    fake_meta_client.rows_by_level = {"campaign": [{
        "campaign_id": "c1",
        "campaign_name": "Campaign",
        "date_start": "2025-03-01",
        "spend": "10",
    }]}

    results = run_gap_backfill(
        session_factory,
        settings,
        cipher=cipher,
        meta_client_factory=lambda token: fake_meta_client,
        google_client_factory=lambda connection, refresh_token: fake_google_client,
        today=TODAY,
    )

    assert results[str(meta_connection.id)] == "completed"
    # 30-day window with nothing stored: backfill reaches the oldest missing day
    assert fake_meta_client.calls[0][2] == "2025-02-08"

    db = session_factory()
    try:
        assert db.query(InsightDaily).count() == 1
    finally:
        db.close()


def test_gap_backfill_skips_complete_connections(
    test_db_session, session_factory, settings, cipher, meta_connection, fake_meta_client, fake_google_client
):
    for offset in range(1, 31):
        day = date.fromordinal(TODAY.toordinal() - offset)
        test_db_session.add(InsightDaily(
            workspace_id=meta_connection.workspace_id,
            connection_id=meta_connection.id,
            provider=meta_connection.provider,
            level=LevelEnum.campaign,
            entity_id="c1",
            date=day,
            spend=1,
        ))
    test_db_session.commit()

    results = run_gap_backfill(
        session_factory,
        settings,
        cipher=cipher,
        meta_client_factory=lambda token: fake_meta_client,
        google_client_factory=lambda connection, refresh_token: fake_google_client,
        today=TODAY,
    )

    assert results[str(meta_connection.id)] == "skipped"
    assert fake_meta_client.calls == []


def test_scheduled_sync_clears_shared_cache(
    session_factory, settings, cipher, meta_connection, google_connection, fake_meta_client, fake_google_client, cache
):
    cache.set("gaps:report", {"daysMissing": 4})

    _run(session_factory, settings, cipher, fake_meta_client, fake_google_client, cache=cache)

    assert cache.get("gaps:report") is None


def test_main_passes_redis_cache_to_jobs(monkeypatch, settings, session_factory):
    import adpulse.database
    import adpulse.deps
    import adpulse.telemetry
    import adpulse.utils.env

    redis_cache = object()
    seen = {}

    def fake_run(session_factory, settings, mode, **kwargs):
        seen.update(kwargs)
        return {}

    monkeypatch.setattr(adpulse.deps, "get_settings", lambda: settings.model_copy(update={"REDIS_URL": "redis://cache:6379/0"}))
    monkeypatch.setattr(adpulse.telemetry, "init_sentry", lambda settings: None)
    monkeypatch.setattr(adpulse.utils.env, "load_env_file", lambda *args, **kwargs: None)
    monkeypatch.setattr(adpulse.database, "build_engine", lambda url: None)
    monkeypatch.setattr(adpulse.database, "init_db", lambda engine: None)
    monkeypatch.setattr(adpulse.database, "build_session_factory", lambda engine: session_factory)
    monkeypatch.setattr(RedisTTLCache, "from_url", classmethod(lambda cls, url, ttl=300: redis_cache))
    monkeypatch.setattr(sync_scheduler, "run_scheduled_sync", fake_run)

    sync_scheduler.main(["--mode", "daily"])

    assert seen["cache"] is redis_cache
