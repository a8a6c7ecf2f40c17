"""Tests for the Google Ads sync service.

WHAT:
    Runs run_google_sync against an in-memory database with a fake GAdsClient.
WHY:
    Google rows share insights_daily with Meta; levels, metadata and quota
    handling must line up with the Meta path.
REFERENCES:
    - adpulse/services/google_sync_service.py
"""

from datetime import date
from decimal import Decimal

import pytest
from fastapi import HTTPException

from adpulse.models import ConnectionStatus, InsightDaily, LevelEnum, SyncJob, SyncJobStatusEnum, SyncJobTypeEnum
from adpulse.schemas import SyncRequest
from adpulse.services import google_sync_service as svc
from adpulse.services.google_ads_client import QuotaExhaustedError

TODAY = date(2025, 3, 10)


def _row(entity_id="111", day="2025-03-09", **extra):
    row = {
        "date": day,
        "impressions": 1000,
        "clicks": 40,
        "spend": 20.0,
        "conversions": 2.0,
        "conversion_value": 60.0,
        "campaign_id": "111",
        "campaign_name": "Brand",
        "entity_id": entity_id,
        "entity_name": "Brand",
    }
    row.update(extra)
    return row


def _run(db, connection, settings, cipher, client, request=None, cache=None):
    return svc.run_google_sync(
        db,
        connection.workspace_id,
        connection.id,
        request or SyncRequest(mode=SyncJobTypeEnum.daily, levels=[LevelEnum.campaign]),
        settings=settings,
        cipher=cipher,
        client_factory=lambda connection, refresh_token: client,
        cache=cache,
        today=TODAY,
    )


def test_daily_sync_stores_rows_with_derived_rates(test_db_session, google_connection, settings, cipher, fake_google_client):
    fake_google_client.rows_by_level = {"campaign": [_row()]}

    response = _run(test_db_session, google_connection, settings, cipher, fake_google_client)

    assert response.synced.upserted_rows == 1
    assert response.synced.warnings_count == 0
    assert fake_google_client.calls == [("123-456-7890", date(2025, 3, 9), date(2025, 3, 9), "campaign")]
    row = test_db_session.query(InsightDaily).one()
    assert Decimal(row.spend) == Decimal("20")
    assert row.ctr == pytest.approx(4.0)
    assert row.roas == pytest.approx(3.0)
    assert row.currency == "EUR"


def test_missing_timezone_is_filled_from_customer_metadata(test_db_session, google_connection, settings, cipher, fake_google_client):
    _run(test_db_session, google_connection, settings, cipher, fake_google_client)

    test_db_session.refresh(google_connection)
    assert google_connection.timezone == "Europe/Amsterdam"
    assert google_connection.currency_code == "EUR"


def test_adset_level_maps_to_ad_group(test_db_session, google_connection, settings, cipher, fake_google_client):
    fake_google_client.rows_by_level = {
        "ad_group": [_row(entity_id="222", ad_group_id="222", ad_group_name="Group")],
    }

    _run(
        test_db_session, google_connection, settings, cipher, fake_google_client,
        request=SyncRequest(mode=SyncJobTypeEnum.daily, levels=[LevelEnum.adset]),
    )

    assert fake_google_client.calls[0][3] == "ad_group"
    row = test_db_session.query(InsightDaily).one()
    assert row.level == LevelEnum.adset
    assert row.entity_id == "222"
    assert row.adset_id == "222"


def test_quota_exhausted_returns_429(test_db_session, google_connection, settings, cipher, fake_google_client):
    fake_google_client.error = QuotaExhaustedError("quota", retry_seconds=900)

    with pytest.raises(HTTPException) as exc_info:
        _run(test_db_session, google_connection, settings, cipher, fake_google_client)

    assert exc_info.value.status_code == 429
    assert "900" in exc_info.value.detail
    job = test_db_session.query(SyncJob).one()
    assert job.status == SyncJobStatusEnum.failed
    test_db_session.refresh(google_connection)
    assert google_connection.status == ConnectionStatus.error


def test_unexpected_error_returns_500(test_db_session, google_connection, settings, cipher, fake_google_client):
    fake_google_client.error = RuntimeError("grpc exploded")

    with pytest.raises(HTTPException) as exc_info:
        _run(test_db_session, google_connection, settings, cipher, fake_google_client)

    assert exc_info.value.status_code == 500


def test_failed_level_reports_only_committed_rows(test_db_session, google_connection, settings, cipher, fake_google_client, monkeypatch):
    fake_google_client.rows_by_level = {
        "campaign": [_row()],
        "ad_group": [
            _row(entity_id="222", ad_group_id="222", ad_group_name="Group"),
            _row(entity_id="223", ad_group_id="223", ad_group_name="Other"),
        ],
    }
    real_upsert = svc.upsert_insight_daily

    def failing_upsert(db, connection, entity, *args, **kwargs):
        if entity.entity_id == "223":
            raise RuntimeError("disk full")
        return real_upsert(db, connection, entity, *args, **kwargs)

    monkeypatch.setattr(svc, "upsert_insight_daily", failing_upsert)

    with pytest.raises(HTTPException):
        _run(
            test_db_session, google_connection, settings, cipher, fake_google_client,
            request=SyncRequest(mode=SyncJobTypeEnum.daily, levels=[LevelEnum.campaign, LevelEnum.adset]),
        )

    job = test_db_session.query(SyncJob).one()
    assert job.status == SyncJobStatusEnum.failed
    assert job.fetched_rows == 1
    assert job.upserted_rows == 1
    assert test_db_session.query(InsightDaily).count() == 1


def test_client_configuration_error_returns_500(test_db_session, google_connection, settings, cipher):
    def factory(connection, refresh_token):
        raise ValueError("Missing required Google Ads settings: GOOGLE_DEVELOPER_TOKEN")

    with pytest.raises(HTTPException) as exc_info:
        svc.run_google_sync(
            test_db_session,
            google_connection.workspace_id,
            google_connection.id,
            SyncRequest(),
            settings=settings,
            cipher=cipher,
            client_factory=factory,
            today=TODAY,
        )

    assert exc_info.value.status_code == 500
    assert test_db_session.query(SyncJob).count() == 0


def test_missing_refresh_token_returns_400(test_db_session, google_connection, settings, cipher, fake_google_client):
    google_connection.token.refresh_token_enc = None
    test_db_session.commit()

    with pytest.raises(HTTPException) as exc_info:
        _run(test_db_session, google_connection, settings, cipher, fake_google_client)

    assert exc_info.value.status_code == 400
