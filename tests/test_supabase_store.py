"""Tests for the Supabase store's query building and row decoding."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

from waworker.config.schema import StorageConfig
from waworker.storage.supabase import SupabaseStore, parse_timestamp


def chained_query(rows: list[dict]) -> MagicMock:
    """PostgREST-style builder where every filter returns the same query."""
    query = MagicMock()
    for method in ("select", "eq", "lt", "order", "limit"):
        getattr(query, method).return_value = query
    query.execute = AsyncMock(return_value=Mock(data=rows))
    return query


class TestRecentMessages:
    """Tests for SupabaseStore.recent_messages."""

    @pytest.mark.asyncio
    async def test_filters_before_cutoff_and_orders_by_time_only(self) -> None:
        """Test the cutoff is pushed into the query and only created_at is used for ordering."""
        query = chained_query([
            {"instance_id": "t1", "sender": "c1", "content": "second", "is_from_me": True,
             "created_at": "2024-05-01T12:00:02+00:00"},
            {"instance_id": "t1", "sender": "c1", "content": "first", "is_from_me": False,
             "created_at": "2024-05-01T12:00:01"},
        ])
        client = Mock()
        client.table.return_value = query
        store = SupabaseStore(client, StorageConfig())
        cutoff = datetime(2024, 5, 1, 12, 0, 5, tzinfo=timezone.utc)

        entries = await store.recent_messages("t1", "c1", 10, before=cutoff)

        client.table.assert_called_once_with("messages")
        query.lt.assert_called_once_with("created_at", cutoff.isoformat())
        query.order.assert_called_once_with("created_at", desc=True)
        query.limit.assert_called_once_with(10)
        assert [e.content for e in entries] == ["first", "second"]
        assert all(e.created_at < cutoff for e in entries)

    @pytest.mark.asyncio
    async def test_zero_limit_skips_the_query(self) -> None:
        """Test a disabled history window never reaches the backend."""
        client = Mock()
        assert await SupabaseStore(client, StorageConfig()).recent_messages("t1", "c1", 0) == []
        client.table.assert_not_called()


def test_naive_timestamp_is_read_as_utc() -> None:
    """Test a timestamp column without time zone compares against aware datetimes."""
    parsed = parse_timestamp("2024-05-01T12:30:00.123456")
    assert parsed == datetime(2024, 5, 1, 12, 30, 0, 123456, tzinfo=timezone.utc)
    assert parsed < datetime.now(timezone.utc)


def test_aware_timestamp_keeps_its_offset() -> None:
    """Test timestamptz values are returned unchanged."""
    parsed = parse_timestamp("2024-05-01T14:30:00+02:00")
    assert parsed == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    assert parsed.utcoffset().total_seconds() == 7200
