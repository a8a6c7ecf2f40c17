"""Tests for gap reports and sync status.

WHAT:
    Gap detection over stored insights_daily rows, cache memoization and the
    combined sync status payload.
REFERENCES:
    - adpulse/services/sync_status_service.py
"""

import uuid
from datetime import date, timedelta

import pytest
from fastapi import HTTPException

from adpulse.models import InsightDaily, LevelEnum, ProviderEnum
from adpulse.services.sync_status_service import (
    gaps_cache_key,
    get_connection_gaps,
    get_dates_with_data,
    get_sync_status,
)


def _add_rows(db, connection, days, level=LevelEnum.campaign):
    for day in days:
        db.add(InsightDaily(
            workspace_id=connection.workspace_id,
            connection_id=connection.id,
            provider=ProviderEnum.meta,
            level=level,
            entity_id="c1",
            date=day,
            spend=10,
        ))
    db.commit()


def test_dates_with_data_only_counts_campaign_level(test_db_session, meta_connection):
    _add_rows(test_db_session, meta_connection, [date(2025, 1, 1), date(2025, 1, 2)])
    _add_rows(test_db_session, meta_connection, [date(2025, 1, 3)], level=LevelEnum.ad)

    dates = get_dates_with_data(
        test_db_session, meta_connection.workspace_id, meta_connection.id, date(2025, 1, 1), date(2025, 1, 5)
    )

    assert dates == ["2025-01-01", "2025-01-02"]


def test_connection_gaps_payload(test_db_session, meta_connection, cache):
    start = date(2025, 1, 1)
    present = [start + timedelta(days=i) for i in range(10) if i not in (3, 4, 7)]
    _add_rows(test_db_session, meta_connection, present)

    payload = get_connection_gaps(
        test_db_session, cache, meta_connection.workspace_id, meta_connection.id,
        start, date(2025, 1, 10), today=date(2025, 1, 20),
    )

    assert payload["metaAdAccountId"] == "act_123"
    assert payload["daysMissing"] == 3
    assert payload["coveragePercent"] == 70
    assert payload["gaps"] == [
        {"dateFrom": "2025-01-04", "dateTo": "2025-01-05", "days": 2},
        {"dateFrom": "2025-01-08", "dateTo": "2025-01-08", "days": 1},
    ]
    assert payload["summary"].startswith("3 days without data across 2 periods")
    assert payload["backfillDays"] == 17


def test_connection_gaps_are_cached(test_db_session, meta_connection, cache):
    args = (test_db_session, cache, meta_connection.workspace_id, meta_connection.id, date(2025, 1, 1), date(2025, 1, 3))

    first = get_connection_gaps(*args, today=date(2025, 2, 1))
    _add_rows(test_db_session, meta_connection, [date(2025, 1, 1)])
    second = get_connection_gaps(*args, today=date(2025, 2, 1))

    assert second == first
    assert cache.get(gaps_cache_key(meta_connection.id, date(2025, 1, 1), date(2025, 1, 3))) == first

    cache.clear()
    third = get_connection_gaps(*args, today=date(2025, 2, 1))
    assert third["daysWithData"] == 1


def test_connection_gaps_unknown_connection(test_db_session, test_workspace, cache):
    with pytest.raises(HTTPException) as exc_info:
        get_connection_gaps(test_db_session, cache, test_workspace.id, uuid.uuid4(), date(2025, 1, 1), date(2025, 1, 2))

    assert exc_info.value.status_code == 404


def test_sync_status_without_history(test_db_session, meta_connection):
    status = get_sync_status(test_db_session, meta_connection.workspace_id, meta_connection.id)

    assert status.connection_id == meta_connection.id
    assert status.provider == ProviderEnum.meta
    assert status.state is None
    assert status.latest_job is None
    assert status.token.status == "valid"
