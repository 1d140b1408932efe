"""
Live view synchronizer.

Keeps a local view of categories and tallies in step with the data store for
one observer (participant or admin):

    CONNECTING -> SUBSCRIBED -> (RECONNECTING <-> SUBSCRIBED) -> CLOSED
                                 RECONNECTING -> DISCONNECTED (attempts exhausted)

On every entry into SUBSCRIBED the cached view is replaced by a fresh pull and
notifications that arrived meanwhile are replayed on top of it. Missed
notifications are never replayed by the store, so the pull is mandatory.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from prometheus_client import Counter, Gauge

from ..config import settings
from ..data_store.base import (
    CATEGORIES_TABLE,
    VOTES_TABLE,
    DataStore,
    StoreError,
    Subscription,
    SubscriptionStatus,
)
from ..shared.errors import VotingError
from ..shared.models import Category, ChangeEvent, ChangeType, Tally
from ..shared.retry import Backoff
from ..vote_gateway.gateway import VoteGateway

logger = logging.getLogger(__name__)

reconnect_attempts = Counter(
    'live_view_reconnect_attempts_total',
    'Resubscription attempts after a notification transport failure'
)

notifications_dropped = Counter(
    'live_view_stale_notifications_total',
    'Category notifications dropped because a newer version was cached'
)

live_observers = Gauge(
    'live_view_observers',
    'Observers currently subscribed to change notifications'
)


class SyncState(str, Enum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class UpdateKind(str, Enum):
    SNAPSHOT = "snapshot"
    CATEGORY = "category"
    TALLY = "tally"
    STATE = "state"


@dataclass(frozen=True)
class ViewUpdate:
    """Payload delivered to the observer after the local view changed."""
    kind: UpdateKind
    state: SyncState
    category: Optional[Category] = None
    previous: Optional[Category] = None
    tally: Optional[Tally] = None


UpdateCallback = Callable[[ViewUpdate], None]


class LiveViewSynchronizer:
    """Pull-then-push view of categories and tallies for one observer."""

    def __init__(
        self,
        store: DataStore,
        gateway: VoteGateway,
        on_update: Optional[UpdateCallback] = None,
        backoff: Optional[Backoff] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.store = store
        self.gateway = gateway
        self.on_update = on_update
        self.backoff = backoff or Backoff(
            settings.RECONNECT_BASE_DELAY_SECONDS,
            settings.RECONNECT_MAX_DELAY_SECONDS,
            settings.RECONNECT_MAX_ATTEMPTS,
        )
        self.sleep = sleep

        self._state = SyncState.CONNECTING
        self._closed = False
        self._categories: Dict[int, Category] = {}
        self._tallies: Dict[int, Tally] = {}
        self._subscriptions: List[Subscription] = []
        self._buffer: List[ChangeEvent] = []
        self._snapshot_ready = False
        self._live = False
        self._lost = asyncio.Event()
        self._first_attempt = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._tally_tasks: Set[asyncio.Task] = set()
        self._tally_requested: Dict[int, int] = {}
        self._tally_applied: Dict[int, int] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    async def start(self) -> None:
        """Begin synchronizing; returns once the first connection attempt settles."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run())
        await self._first_attempt.wait()

    async def close(self) -> None:
        """Stop synchronizing. No update is delivered after this returns."""
        if self._closed:
            return
        self._closed = True
        self._state = SyncState.CLOSED
        self._first_attempt.set()

        current = asyncio.current_task()
        pending = [
            task for task in [self._task, *self._tally_tasks]
            if task is not None and task is not current and not task.done()
        ]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await self._teardown_subscriptions()
        logger.info("Live view synchronizer closed")

    def categories(self) -> List[Category]:
        return [self._categories[key] for key in sorted(self._categories)]

    def tally_for(self, category_id: int) -> Tally:
        return self._tallies.get(category_id) or Tally.zero(category_id)

    def total_votes(self) -> int:
        return sum(tally.total for tally in self._tallies.values())

    def active_category(self) -> Optional[Category]:
        """The unlocked category in the local view, or None while waiting."""
        unlocked = [category for category in self.categories() if category.is_unlocked]
        if len(unlocked) > 1:
            logger.error(
                f"Consistency error: local view shows {len(unlocked)} unlocked categories "
                f"{[category.id for category in unlocked]}"
            )
        return unlocked[0] if unlocked else None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            await self._reconnect_loop()
        except Exception:
            logger.exception("Live view synchronizer stopped on an unexpected error")
            await self._teardown_subscriptions()
            self._set_state(SyncState.DISCONNECTED)
        finally:
            self._first_attempt.set()

    async def _reconnect_loop(self) -> None:
        attempt = 0
        while not self._closed:
            try:
                await self._connect()
                attempt = 0
                self._first_attempt.set()
                await self._lost.wait()
            except (StoreError, VotingError, OSError, asyncio.TimeoutError) as e:
                logger.error(f"Live view connection failed: {e!r}")

            await self._teardown_subscriptions()
            if self._closed:
                return

            if attempt >= self.backoff.max_attempts:
                logger.error("Max reconnection attempts reached, live view disconnected")
                self._set_state(SyncState.DISCONNECTED)
                self._first_attempt.set()
                return

            delay = self.backoff.delay(attempt)
            attempt += 1
            reconnect_attempts.inc()
            logger.warning(
                f"Reconnecting to live updates (attempt {attempt}/{self.backoff.max_attempts}) "
                f"in {delay:.1f}s..."
            )
            self._set_state(SyncState.RECONNECTING)
            self._first_attempt.set()
            await self.sleep(delay)

    async def _connect(self) -> None:
        self._lost.clear()
        self._snapshot_ready = False
        self._buffer = []

        for table in (CATEGORIES_TABLE, VOTES_TABLE):
            subscription = await self.store.subscribe(table, self._on_event, self._on_status)
            self._subscriptions.append(subscription)

        self._state = SyncState.SUBSCRIBED
        self._live = True
        live_observers.inc()
        logger.info("Connected to real-time updates, pulling snapshot")
        await self._pull_snapshot()

    async def _pull_snapshot(self) -> None:
        categories = await self.gateway.retry.run(
            lambda: self.store.fetch_categories(),
            description='fetch_categories'
        )
        tallies = {}
        for category in categories:
            tallies[category.id] = await self.gateway.tally(category.id)
        if self._closed:
            return

        self._categories = {category.id: category for category in categories}
        self._tallies = tallies
        # Refreshes requested before this pull must not overwrite it
        self._tally_applied.update(self._tally_requested)
        self._snapshot_ready = True

        buffered, self._buffer = self._buffer, []
        for event in buffered:
            self._apply(event)

        self._emit(ViewUpdate(kind=UpdateKind.SNAPSHOT, state=self._state))

    async def _teardown_subscriptions(self) -> None:
        if self._live:
            self._live = False
            live_observers.dec()
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            try:
                await subscription.unsubscribe()
            except (StoreError, OSError) as e:
                logger.error(f"Error closing subscription: {e!r}")

    # ------------------------------------------------------------------
    # Notification handling
    # ------------------------------------------------------------------

    def _on_status(self, status: SubscriptionStatus, error: Optional[Exception]) -> None:
        if self._closed or status == SubscriptionStatus.SUBSCRIBED:
            return
        logger.warning(f"Live update subscription status {status.value}: {error!r}")
        self._lost.set()

    def _on_event(self, event: ChangeEvent) -> None:
        if self._closed or self._lost.is_set():
            return
        if not self._snapshot_ready:
            self._buffer.append(event)
            return
        self._apply(event)

    def _apply(self, event: ChangeEvent) -> None:
        if event.table == CATEGORIES_TABLE and event.type == ChangeType.UPDATE:
            self._apply_category(event)
        elif event.table == VOTES_TABLE and event.type == ChangeType.INSERT:
            try:
                category_id = int(event.new['category_id'])
            except (KeyError, TypeError, ValueError):
                logger.error(f"Vote notification without a category: {event.new}")
                return
            self._schedule_tally(category_id)

    def _apply_category(self, event: ChangeEvent) -> None:
        try:
            incoming = Category.from_dict(event.new)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed category notification: {e!r}")
            return

        cached = self._categories.get(incoming.id)
        if (cached is not None and cached.updated_at and incoming.updated_at
                and incoming.updated_at < cached.updated_at):
            notifications_dropped.inc()
            logger.debug(f"Dropped stale update for category {incoming.id}")
            return

        if cached is None:
            merged = incoming
        else:
            merged = cached.merge({
                'title': incoming.title,
                'nominees': incoming.nominees,
                'is_unlocked': incoming.is_unlocked,
                'updated_at': incoming.updated_at or cached.updated_at,
            })
        self._categories[merged.id] = merged
        self._emit(ViewUpdate(
            kind=UpdateKind.CATEGORY,
            state=self._state,
            category=merged,
            previous=cached,
            tally=self._tallies.get(merged.id),
        ))

    def _schedule_tally(self, category_id: int) -> None:
        sequence = self._tally_requested.get(category_id, 0) + 1
        self._tally_requested[category_id] = sequence
        task = asyncio.create_task(self._refresh_tally(category_id, sequence))
        self._tally_tasks.add(task)
        task.add_done_callback(self._tally_tasks.discard)

    async def _refresh_tally(self, category_id: int, sequence: int) -> None:
        tally = await self.gateway.tally(category_id)
        if self._closed or sequence <= self._tally_applied.get(category_id, 0):
            return
        self._tally_applied[category_id] = sequence
        self._tallies[category_id] = tally
        self._emit(ViewUpdate(
            kind=UpdateKind.TALLY,
            state=self._state,
            category=self._categories.get(category_id),
            tally=tally,
        ))

    # ------------------------------------------------------------------
    # Observer delivery
    # ------------------------------------------------------------------

    def _set_state(self, state: SyncState) -> None:
        if self._closed or self._state == state:
            return
        self._state = state
        self._emit(ViewUpdate(kind=UpdateKind.STATE, state=state))

    def _emit(self, update: ViewUpdate) -> None:
        if self._closed or self.on_update is None:
            return
        try:
            self.on_update(update)
        except Exception:
            logger.exception(f"Error in live view observer callback ({update.kind.value})")
