"""Property-based tests for the work lease manager.

This module verifies that leases are exclusive per work unit, that
release is idempotent and token-guarded, and that stale leases are
reclaimed.

Feature: curation-pipeline

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
- Tag format: Feature: curation-pipeline, Property N: <property_text>
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings, strategies as st

from src.curation.events.emitter import RecordingEventEmitter
from src.curation.events.models import EventType
from src.curation.leases import (
    AlreadyLeasedError,
    InMemoryLeaseRepository,
    WorkLease,
    WorkLeaseManager,
    document_work_id,
    item_work_id,
    mapping_work_id,
)


# =============================================================================
# Hypothesis Strategies for Generating Test Data
# =============================================================================


@st.composite
def work_id(draw: st.DrawFn) -> str:
    """Generate a work id such as "document:42" or "utterance:u-7"."""
    kind = draw(st.sampled_from(["document", "mapping", "utterance", "meaning"]))
    key = draw(
        st.text(
            alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789-"),
            min_size=1,
            max_size=20,
        )
    )
    return f"{kind}:{key}"


# =============================================================================
# Helper Functions
# =============================================================================


def run_async(coro):
    """Run an async coroutine synchronously for testing."""
    return asyncio.run(coro)


def make_manager(emitter=None):
    repository = InMemoryLeaseRepository()
    return WorkLeaseManager(repository, event_emitter=emitter), repository


# =============================================================================
# Property Tests
# =============================================================================


class TestLeaseExclusivity:
    """Property tests for mutual exclusion.

    Feature: curation-pipeline, Property 1: Lease Exclusivity

    *For any* work id and any number of concurrent acquirers, exactly one
    acquisition succeeds until the lease is released.
    """

    @given(work=work_id(), contenders=st.integers(min_value=2, max_value=12))
    @settings(max_examples=100)
    def test_exactly_one_concurrent_acquirer_wins(self, work: str, contenders: int) -> None:
        """Property 1: Concurrent acquirers of one work id see one winner."""
        manager, _ = make_manager()

        async def test():
            handles = await asyncio.gather(
                *(manager.try_acquire(work) for _ in range(contenders))
            )
            winners = [h for h in handles if h is not None]
            assert len(winners) == 1
            assert winners[0].work_id == work
            assert await manager.is_leased(work)

        run_async(test())

    @given(work=work_id())
    @settings(max_examples=100)
    def test_lease_is_acquirable_again_after_release(self, work: str) -> None:
        """Property 1: Releasing a lease frees the work unit."""
        manager, _ = make_manager()

        async def test():
            first = await manager.acquire(work)
            with pytest.raises(AlreadyLeasedError):
                await manager.acquire(work)

            await manager.release(first)
            assert not await manager.is_leased(work)

            second = await manager.acquire(work)
            assert second.lease_token != first.lease_token

        run_async(test())

    def test_second_worker_is_refused_document_lease(self) -> None:
        manager, _ = make_manager()

        async def test():
            handle = await manager.acquire("document:42")

            with pytest.raises(AlreadyLeasedError) as exc_info:
                await manager.acquire("document:42")
            assert exc_info.value.work_id == "document:42"
            assert await manager.try_acquire("document:42") is None

            await manager.release(handle)

        run_async(test())

    def test_distinct_work_ids_do_not_conflict(self) -> None:
        manager, _ = make_manager()

        async def test():
            a = await manager.acquire(document_work_id("42"))
            b = await manager.acquire(mapping_work_id("42"))
            c = await manager.acquire(item_work_id("utterance", "42"))
            assert {a.work_id, b.work_id, c.work_id} == {
                "document:42",
                "mapping:42",
                "utterance:42",
            }

        run_async(test())

    def test_empty_work_id_is_rejected(self) -> None:
        manager, _ = make_manager()

        with pytest.raises(ValueError):
            run_async(manager.acquire(""))


class TestLeaseRelease:
    """Property tests for release semantics.

    Feature: curation-pipeline, Property 2: Idempotent Release

    *For any* handle, releasing it more than once is a no-op, and a stale
    handle never releases a lease re-acquired by someone else.
    """

    @given(work=work_id(), repeats=st.integers(min_value=1, max_value=5))
    @settings(max_examples=100)
    def test_release_is_idempotent(self, work: str, repeats: int) -> None:
        """Property 2: Extra releases do nothing."""
        manager, _ = make_manager()

        async def test():
            handle = await manager.acquire(work)
            for _ in range(repeats + 1):
                await manager.release(handle)
            assert not await manager.is_leased(work)

        run_async(test())

    def test_release_of_none_is_noop(self) -> None:
        manager, _ = make_manager()
        run_async(manager.release(None))

    def test_stale_handle_does_not_release_new_holder(self) -> None:
        manager, repository = make_manager()

        async def test():
            abandoned = WorkLease(
                work_id="document:42",
                started_at=datetime.now(timezone.utc) - timedelta(hours=2),
            )
            await repository.insert(abandoned)
            old = abandoned.to_handle()
            assert await manager.reclaim_stale() == ["document:42"]

            new = await manager.acquire("document:42")
            await manager.release(old)

            lease = await repository.get("document:42")
            assert lease is not None
            assert lease.lease_token == new.lease_token

        run_async(test())

    def test_hold_releases_on_exception(self) -> None:
        manager, _ = make_manager()

        async def test():
            with pytest.raises(RuntimeError):
                async with manager.hold("mapping:7"):
                    assert await manager.is_leased("mapping:7")
                    raise RuntimeError("boom")
            assert not await manager.is_leased("mapping:7")

        run_async(test())


class TestStaleLeaseReclamation:
    """Property tests for reclaiming abandoned leases.

    Feature: curation-pipeline, Property 3: Stale Lease Reclamation

    *For any* set of leases, reclaim_stale deletes exactly those older than
    the staleness window and reports each one.
    """

    @given(
        ages=st.lists(
            st.integers(min_value=0, max_value=7200), min_size=1, max_size=10
        )
    )
    @settings(max_examples=100)
    def test_only_leases_older_than_window_are_reclaimed(self, ages) -> None:
        """Property 3: Leases past the window are reclaimed, others kept."""
        emitter = RecordingEventEmitter()
        manager, repository = make_manager(emitter)
        window = timedelta(hours=1)
        now = datetime.now(timezone.utc)

        async def test():
            expected = set()
            for index, age in enumerate(ages):
                lease = WorkLease(
                    work_id=f"document:{index}",
                    started_at=now - timedelta(seconds=age),
                )
                await repository.insert(lease)
                # One minute of slack keeps the boundary away from test timing
                if age > window.total_seconds() + 60:
                    expected.add(lease.work_id)
                elif age >= window.total_seconds() - 60:
                    await repository.delete(lease.work_id, lease.lease_token)

            reclaimed = await manager.reclaim_stale(window)

            assert set(reclaimed) == expected
            for work in expected:
                assert not await manager.is_leased(work)
            assert {e.entity_id for e in emitter.of_type(EventType.LEASE_RECLAIMED)} == expected

        run_async(test())

    def test_reclaimed_work_can_be_acquired_by_another_worker(self) -> None:
        manager, repository = make_manager()

        async def test():
            await repository.insert(
                WorkLease(
                    work_id="document:42",
                    started_at=datetime.now(timezone.utc) - timedelta(hours=2),
                )
            )
            assert await manager.try_acquire("document:42") is None

            reclaimed = await manager.reclaim_stale()
            assert reclaimed == ["document:42"]
            assert await manager.try_acquire("document:42") is not None

        run_async(test())

    def test_non_positive_window_is_rejected(self) -> None:
        manager, _ = make_manager()

        with pytest.raises(ValueError):
            run_async(manager.reclaim_stale(timedelta(0)))
