"""Unit tests for the live view synchronizer."""

import asyncio
from datetime import timedelta

import pytest

from awards_voting.live_sync.synchronizer import (
    LiveViewSynchronizer,
    SyncState,
    UpdateKind,
)
from awards_voting.shared.models import ChangeEvent, ChangeType


@pytest.fixture
def updates():
    """Every ViewUpdate delivered to the observer, in order."""
    return []


@pytest.fixture
def make_view(store, gateway, reconnect_backoff, fake_sleep, updates):
    """Factory for synchronizers recording their updates.

    Must be called from inside the running test loop.
    """
    def _make(sleep=None, on_update=None):
        return LiveViewSynchronizer(
            store,
            gateway,
            on_update=on_update or updates.append,
            backoff=reconnect_backoff,
            sleep=sleep or fake_sleep,
        )

    return _make


def unlocked_in(view):
    return [category.id for category in view.categories() if category.is_unlocked]


@pytest.mark.asyncio
class TestSnapshot:
    """Tests for the initial pull."""

    async def test_start_pulls_categories_and_tallies(self, store, gateway, controller, make_view, updates):
        await controller.unlock(2)
        await gateway.submit_vote(2, "A", "device-1")
        view = make_view()

        await view.start()

        assert view.state == SyncState.SUBSCRIBED
        assert [category.id for category in view.categories()] == list(range(1, 9))
        assert view.active_category().id == 2
        assert view.tally_for(2).A == 1
        assert view.total_votes() == 1
        assert updates[0].kind == UpdateKind.SNAPSHOT
        assert store.subscription_count == 2
        await view.close()

    async def test_changes_during_pull_are_not_lost(self, store, make_view, wait_until):
        fetch_categories = store.fetch_categories
        changed = []

        async def fetch_then_change(unlocked=None):
            result = await fetch_categories(unlocked)
            if not changed:
                changed.append(True)
                await store.update_categories({"is_unlocked": True}, 4)
            return result

        store.fetch_categories = fetch_then_change
        view = make_view()

        await view.start()

        await wait_until(lambda: unlocked_in(view) == [4])
        await view.close()


@pytest.mark.asyncio
class TestLiveUpdates:
    """Tests for notification handling."""

    async def test_unlock_reaches_view(self, controller, make_view, updates, wait_until):
        view = make_view()
        await view.start()

        await controller.unlock(5)

        await wait_until(lambda: unlocked_in(view) == [5])
        changed = [u for u in updates if u.kind == UpdateKind.CATEGORY and u.category.id == 5]
        assert changed[-1].category.is_unlocked is True
        assert changed[-1].previous.is_unlocked is False
        await view.close()

    async def test_never_two_unlocked_in_view(self, controller, make_view, wait_until):
        """Test: unlock 5 then 7, the view never shows both unlocked."""
        observed = []
        view = None

        def record(update):
            observed.append(len(unlocked_in(view)))

        view = make_view(on_update=record)
        await view.start()

        await controller.unlock(5)
        await controller.unlock(7)

        await wait_until(lambda: unlocked_in(view) == [7])
        assert max(observed) <= 1
        await view.close()

    async def test_new_vote_recomputes_tally(self, controller, gateway, make_view, updates, wait_until):
        await controller.unlock(3)
        view = make_view()
        await view.start()

        await gateway.submit_vote(3, "B", "device-1")
        await gateway.submit_vote(3, "B", "device-2")

        await wait_until(lambda: view.tally_for(3).B == 2)
        tally_updates = [u for u in updates if u.kind == UpdateKind.TALLY]
        assert tally_updates
        assert tally_updates[-1].tally.total == 2
        await view.close()

    async def test_stale_category_notification_dropped(self, make_view, updates):
        view = make_view()
        await view.start()
        cached = view.categories()[2]
        stale = cached.merge({
            "is_unlocked": True,
            "updated_at": cached.updated_at - timedelta(seconds=1),
        })

        view._on_event(ChangeEvent(table="categories", type=ChangeType.UPDATE, new=stale.to_dict()))

        assert unlocked_in(view) == []
        assert not [u for u in updates if u.kind == UpdateKind.CATEGORY]
        await view.close()

    async def test_observer_errors_do_not_stop_sync(self, controller, make_view, wait_until):
        calls = []

        def broken_observer(update):
            calls.append(update)
            raise RuntimeError("render failed")

        view = make_view(on_update=broken_observer)
        await view.start()

        await controller.unlock(6)

        await wait_until(lambda: unlocked_in(view) == [6])
        assert len(calls) > 1
        await view.close()


@pytest.mark.asyncio
class TestReconnect:
    """Tests for transport failure handling."""

    async def test_reconnect_pulls_missed_changes(self, store, controller, make_view, updates, sleeps, wait_until):
        gate = asyncio.Event()

        async def gated_sleep(delay):
            sleeps.append(delay)
            await gate.wait()

        view = make_view(sleep=gated_sleep)
        await view.start()

        store.drop_subscriptions()
        await wait_until(lambda: view.state == SyncState.RECONNECTING)
        await controller.unlock(2)
        assert unlocked_in(view) == []

        gate.set()

        await wait_until(lambda: view.state == SyncState.SUBSCRIBED and unlocked_in(view) == [2])
        assert sleeps == [1.0]
        kinds = [u.kind for u in updates]
        assert kinds.count(UpdateKind.SNAPSHOT) == 2
        assert any(u.kind == UpdateKind.STATE and u.state == SyncState.RECONNECTING for u in updates)
        await view.close()

    async def test_gives_up_after_max_attempts(self, store, make_view, updates, sleeps, wait_until):
        view = make_view()
        await view.start()

        store.fail_next_subscribe(100)
        store.drop_subscriptions()

        await wait_until(lambda: view.state == SyncState.DISCONNECTED)
        assert sleeps == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert updates[-1].kind == UpdateKind.STATE
        assert updates[-1].state == SyncState.DISCONNECTED
        await view.close()

    async def test_start_survives_initial_failure(self, store, make_view, wait_until):
        store.fail_next_subscribe(1)
        view = make_view()

        await view.start()

        await wait_until(lambda: view.state == SyncState.SUBSCRIBED)
        assert len(view.categories()) == 8
        await view.close()


@pytest.mark.asyncio
class TestClose:

    async def test_no_updates_after_close(self, store, controller, gateway, make_view, updates):
        await controller.unlock(1)
        view = make_view()
        await view.start()

        await view.close()
        delivered = len(updates)
        await controller.unlock(2)
        await gateway.submit_vote(2, "A", "device-1")
        await asyncio.sleep(0.05)

        assert len(updates) == delivered
        assert view.state == SyncState.CLOSED
        assert store.subscription_count == 0

    async def test_close_is_idempotent(self, make_view):
        view = make_view()
        await view.start()

        await view.close()
        await view.close()

        assert view.state == SyncState.CLOSED


@pytest.mark.asyncio
class TestRobustness:
    """Tests for notification formats and failure paths."""

    async def test_trimmed_fractional_seconds_in_notification(self, make_view):
        view = make_view()
        await view.start()
        row = view.categories()[2].to_dict()
        row.pop("is_unlocked")
        row["unlocked"] = True
        row["updated_at"] = "2099-10-18T23:12:00.12345+00:00"

        view._on_event(ChangeEvent(table="categories", type=ChangeType.UPDATE, new=row))

        assert view.active_category().id == 3
        await view.close()

    async def test_refresh_from_before_reconnect_does_not_overwrite_snapshot(
        self, store, controller, gateway, make_view, sleeps, wait_until, monkeypatch
    ):
        """Test: a tally refresh still running across a reconnect is discarded.

        Flow:
        1. A vote triggers a refresh that computes A=1 and then stalls
        2. The transport drops and another vote lands while reconnecting
        3. The reconnect snapshot shows both votes
        4. The stalled refresh finishes and must not roll the tally back
        """
        await controller.unlock(3)
        reconnect_gate = asyncio.Event()

        async def gated_sleep(delay):
            sleeps.append(delay)
            await reconnect_gate.wait()

        view = make_view(sleep=gated_sleep)
        await view.start()

        real_tally = gateway.tally
        refresh_gate = asyncio.Event()
        held = []

        async def stalled_tally(category_id):
            tally = await real_tally(category_id)
            if not held:
                held.append(tally)
                await refresh_gate.wait()
            return tally

        monkeypatch.setattr(gateway, "tally", stalled_tally)

        await gateway.submit_vote(3, "A", "device-1")
        await wait_until(lambda: bool(held))

        store.drop_subscriptions()
        await wait_until(lambda: view.state == SyncState.RECONNECTING)
        await gateway.submit_vote(3, "B", "device-2")
        reconnect_gate.set()
        await wait_until(lambda: view.state == SyncState.SUBSCRIBED and view.tally_for(3).total == 2)

        refresh_gate.set()
        await asyncio.sleep(0.05)

        assert held[0].total == 1
        assert view.tally_for(3).total == 2
        await view.close()

    async def test_unexpected_error_ends_disconnected(self, store, make_view, updates, monkeypatch):
        async def broken_fetch(unlocked=None):
            raise RuntimeError("row decoder failed")

        monkeypatch.setattr(store, "fetch_categories", broken_fetch)
        view = make_view()

        await asyncio.wait_for(view.start(), timeout=1.0)

        assert view.state == SyncState.DISCONNECTED
        assert updates[-1].state == SyncState.DISCONNECTED
        assert store.subscription_count == 0
        await view.close()
