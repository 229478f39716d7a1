"""Tests for org filtering and bounded concurrency."""

import asyncio

import pytest

from si_migrator.migration.walker import OrgFilter, run_bounded


class TestOrgFilter:
    """Test include and exclude patterns."""

    def test_empty_filter_admits_all(self):
        assert OrgFilter().should_process('anything') is True

    def test_include(self):
        org_filter = OrgFilter(include=['^team-'])

        assert org_filter.should_process('team-a') is True
        assert org_filter.should_process('other') is False

    def test_exclude_wins(self):
        org_filter = OrgFilter(include=['^team-'], exclude=['-sandbox$'])

        assert org_filter.should_process('team-a') is True
        assert org_filter.should_process('team-a-sandbox') is False

    def test_patterns_match_anywhere(self):
        org_filter = OrgFilter(exclude=['system'])

        assert org_filter.should_process('my-system-org') is False


class TestRunBounded:
    """Test the worker pool used per space."""

    @pytest.mark.asyncio
    async def test_runs_every_item(self):
        seen = []

        async def worker(item):
            seen.append(item)

        await run_bounded([1, 2, 3], worker, max_workers=2)

        assert sorted(seen) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_empty_items(self):
        async def worker(item):
            raise AssertionError('not expected')

        await run_bounded([], worker, max_workers=1)

    @pytest.mark.asyncio
    async def test_respects_max_workers(self):
        """Test that no more than max_workers items run at once."""
        running = 0
        peak = 0

        async def worker(item):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        await run_bounded(range(10), worker, max_workers=3)

        assert peak == 3

    @pytest.mark.asyncio
    async def test_sequential_with_one_worker(self):
        order = []

        async def worker(item):
            order.append(('start', item))
            await asyncio.sleep(0)
            order.append(('end', item))

        await run_bounded(['a', 'b'], worker, max_workers=1)

        assert order == [('start', 'a'), ('end', 'a'), ('start', 'b'), ('end', 'b')]

    @pytest.mark.asyncio
    async def test_cancellation_stops_pending_items(self):
        """Test that cancelling the run cancels in-flight and queued items."""
        started = []
        release = asyncio.Event()

        async def worker(item):
            started.append(item)
            await release.wait()

        task = asyncio.ensure_future(run_bounded(range(5), worker, max_workers=2))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert started == [0, 1]
