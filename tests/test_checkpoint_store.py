#!/usr/bin/env python3
"""Tests for CheckpointStore against a cursor double that applies the
conflict-branch WHERE clause the way Postgres does."""
from contextlib import contextmanager
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from checkpoint_store import ADVANCE_SQL, LOAD_SQL, CheckpointStore
from ingest_errors import CheckpointUnavailable


class _CheckpointTableCursor:
    def __init__(self, table):
        self.table = table
        self.rowcount = -1
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params):
        if sql is ADVANCE_SQL:
            stream, event_id, event_time = params
            current = self.table.get(stream)
            if current is None or current[1] < event_id:
                self.table[stream] = (stream, event_id, event_time)
                self.rowcount = 1
            else:
                self.rowcount = 0
        elif sql is LOAD_SQL:
            self._row = self.table.get(params[0])
        else:
            raise AssertionError(f"unexpected SQL: {sql}")

    def fetchone(self):
        return self._row


def _store(table=None):
    table = {} if table is None else table
    conn = MagicMock()
    conn.cursor.side_effect = lambda: _CheckpointTableCursor(table)

    @contextmanager
    def factory():
        yield conn

    return CheckpointStore(connection_factory=factory), table


T0 = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)


def test_load_missing_stream_returns_none():
    store, _ = _store()
    assert store.load("killmails") is None


def test_advance_then_load():
    store, _ = _store()
    assert store.advance("killmails", 500, T0) is True
    cp = store.load("killmails")
    assert cp.last_seen_id == 500
    assert cp.last_seen_time == T0


def test_advance_is_monotonic():
    """An older id (e.g. from a catch-up replay) never moves the checkpoint back."""
    store, _ = _store()
    store.advance("killmails", 500, T0)
    assert store.advance("killmails", 100, T0) is False
    assert store.advance("killmails", 500, T0) is False
    assert store.load("killmails").last_seen_id == 500
    assert store.advance("killmails", 501, T0) is True
    assert store.load("killmails").last_seen_id == 501


def test_streams_are_independent():
    store, _ = _store()
    store.advance("killmails", 500, T0)
    store.advance("backfill:99", 20, T0)
    assert store.load("killmails").last_seen_id == 500
    assert store.load("backfill:99").last_seen_id == 20


def test_unreadable_checkpoint_raises():
    @contextmanager
    def broken():
        raise RuntimeError("connection refused")
        yield  # pragma: no cover

    store = CheckpointStore(connection_factory=broken)
    with pytest.raises(CheckpointUnavailable):
        store.load("killmails")


def test_advance_sql_guards_on_last_seen_id():
    assert "WHERE ingestion_checkpoints.last_seen_id < EXCLUDED.last_seen_id" in ADVANCE_SQL
