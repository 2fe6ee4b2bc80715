"""Unit tests for the PostgreSQL repositories.

The database is replaced by a mock whose connection() and transaction()
context managers yield an AsyncMock connection, so these tests pin down
how command statuses are interpreted and how driver errors surface.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from src.curation.db import DatabaseError, as_utc, load_json, rows_affected
from src.curation.feedback.models import RetryQueueEntry
from src.curation.feedback.repository import PostgresFeedbackRepository
from src.curation.gates.similarity import PostgresSimilarityIndex
from src.curation.leases.models import WorkLease
from src.curation.leases.repository import PostgresLeaseRepository
from src.curation.state.models import (
    CurationItem,
    ItemType,
    LifecycleState,
    StateTransitionEvent,
)
from src.curation.state.repository import PostgresItemRepository


def run_async(coro):
    return asyncio.run(coro)


def _make_mock_db(conn: AsyncMock) -> MagicMock:
    """Build a mock PostgresDatabase handing out the given connection."""

    @asynccontextmanager
    async def _yield_conn():
        yield conn

    db = MagicMock()
    db.connection = MagicMock(side_effect=lambda: _yield_conn())
    db.transaction = MagicMock(side_effect=lambda: _yield_conn())
    return db


@pytest.fixture
def conn():
    return AsyncMock()


class TestDbHelpers:
    def test_rows_affected_reads_last_token(self):
        assert rows_affected("INSERT 0 1") == 1
        assert rows_affected("UPDATE 0") == 0
        assert rows_affected("DELETE 3") == 3

    def test_as_utc_adds_timezone_to_naive_values(self):
        naive = datetime(2025, 1, 1, 12, 0, 0)
        assert as_utc(naive).tzinfo == timezone.utc
        assert as_utc(None) is None

    def test_load_json_accepts_str_dict_and_none(self):
        assert load_json('{"a": 1}') == {"a": 1}
        assert load_json({"b": 2}) == {"b": 2}
        assert load_json(None) == {}


class TestPostgresLeaseRepository:
    def test_insert_reports_won_lease(self, conn):
        conn.execute.return_value = "INSERT 0 1"
        repo = PostgresLeaseRepository(_make_mock_db(conn))

        assert run_async(repo.insert(WorkLease(work_id="document:42"))) is True
        sql = conn.execute.call_args.args[0]
        assert "ON CONFLICT (work_id) DO NOTHING" in sql

    def test_insert_reports_lost_lease(self, conn):
        conn.execute.return_value = "INSERT 0 0"
        repo = PostgresLeaseRepository(_make_mock_db(conn))

        assert run_async(repo.insert(WorkLease(work_id="document:42"))) is False

    def test_delete_is_guarded_by_token(self, conn):
        conn.execute.return_value = "DELETE 0"
        repo = PostgresLeaseRepository(_make_mock_db(conn))

        assert run_async(repo.delete("document:42", "other-token")) is False
        args = conn.execute.call_args.args
        assert args[1:] == ("document:42", "other-token")

    def test_delete_older_than_returns_reclaimed_ids(self, conn):
        conn.fetch.return_value = [{"work_id": "document:1"}, {"work_id": "mapping:2"}]
        repo = PostgresLeaseRepository(_make_mock_db(conn))

        cutoff = datetime.now(timezone.utc) - timedelta(hours=1)
        assert run_async(repo.delete_older_than(cutoff)) == ["document:1", "mapping:2"]

    def test_driver_errors_are_wrapped(self, conn):
        original = ConnectionError("connection reset")
        conn.execute.side_effect = original
        repo = PostgresLeaseRepository(_make_mock_db(conn))

        with pytest.raises(DatabaseError) as exc_info:
            run_async(repo.insert(WorkLease(work_id="document:42")))
        assert exc_info.value.original_error is original


class TestPostgresItemRepository:
    def _transition(self):
        item = CurationItem(
            item_id="u-1",
            item_type=ItemType.UTTERANCE,
            state=LifecycleState.CANDIDATE,
            version=2,
        )
        event = StateTransitionEvent(
            item_id="u-1",
            item_type=ItemType.UTTERANCE,
            from_state=LifecycleState.DRAFT,
            to_state=LifecycleState.CANDIDATE,
        )
        return item, event

    def test_lost_compare_and_set_writes_no_event(self, conn):
        conn.execute.return_value = "UPDATE 0"
        repo = PostgresItemRepository(_make_mock_db(conn))
        item, event = self._transition()

        assert run_async(repo.apply_transition(item, event)) is False
        assert conn.execute.await_count == 1

    def test_won_compare_and_set_appends_event(self, conn):
        conn.execute.return_value = "UPDATE 1"
        repo = PostgresItemRepository(_make_mock_db(conn))
        item, event = self._transition()

        assert run_async(repo.apply_transition(item, event)) is True
        assert conn.execute.await_count == 2
        update_args = conn.execute.await_args_list[0].args
        # expected version is the one before the transition
        assert update_args[-1] == 1
        assert "INSERT INTO state_transitions" in conn.execute.await_args_list[1].args[0]


class TestPostgresFeedbackRepository:
    def test_taken_retry_slot_is_reported_not_raised(self, conn):
        conn.execute.side_effect = asyncpg.UniqueViolationError("duplicate key")
        repo = PostgresFeedbackRepository(_make_mock_db(conn))
        entry = RetryQueueEntry(
            item_id="u-1",
            item_type=ItemType.UTTERANCE,
            feedback_id="f-1",
            slot=2,
            retry_count=1,
        )

        assert run_async(repo.insert_retry_entry(entry)) is False

    def test_claim_of_already_claimed_entry_returns_none(self, conn):
        conn.fetchrow.return_value = None
        repo = PostgresFeedbackRepository(_make_mock_db(conn))

        assert run_async(repo.claim_entry("entry-1")) is None
        assert "status = 'pending'" in conn.fetchrow.call_args.args[0]


class TestPostgresSimilarityIndex:
    def test_untagged_items_match_any_language(self, conn):
        conn.fetch.return_value = [{"item_id": "u-9", "text": "buenos días", "score": 1.0}]
        index = PostgresSimilarityIndex(_make_mock_db(conn))

        matches = run_async(index.similar_to("buenos días", ItemType.UTTERANCE, "es", 0.85))

        assert [m.id for m in matches] == ["u-9"]
        sql = conn.fetch.call_args.args[0]
        assert "language IS NULL OR language = $3" in sql

    def test_driver_errors_are_wrapped(self, conn):
        conn.fetch.side_effect = asyncpg.PostgresError("function similarity does not exist")
        index = PostgresSimilarityIndex(_make_mock_db(conn))

        with pytest.raises(DatabaseError):
            run_async(index.similar_to("hola", ItemType.UTTERANCE, None, 0.85))
