"""TemporalController — debounced, cancellable fetching of temporal slices.

Drives one temporal layer (the drought monitor by default) from a time
cursor. Rapid cursor moves collapse into a single fetch; a newer request
cancels the previous in-flight one, and a response that arrives for a key
that is no longer the latest request is discarded at settlement.

    request(key) ──hit──────────────────────────────► SETTLED
         │
         └─miss─► PENDING ──(debounce)──► FETCHING ──► SETTLED | CANCELLED | FAILED

``state`` is the live state; it returns to IDLE once an outcome is reached,
and ``last_outcome`` keeps the terminal state of the last cycle.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Callable, Iterable, Optional

from loguru import logger

from layersync.comms.event_bus import EventBus
from layersync.layers.layer import FeatureCollection
from layersync.layers.state import ActiveLayerSet
from layersync.timeline.cache import ResultCache
from layersync.timeline.keys import (
    DEFAULT_TEMPORAL_FIELD,
    neighbors,
    normalize_temporal_key,
    temporal_filter,
)
from layersync.wfs.cancellation import CancelToken
from layersync.wfs.errors import Cancelled, MissingPrecondition, QueryError


class ControllerState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    FETCHING = "fetching"
    SETTLED = "settled"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TERMINAL = (ControllerState.SETTLED, ControllerState.CANCELLED, ControllerState.FAILED)


class TemporalController:
    """Debounced fetch controller for one temporal layer.

    Args:
        client: Query client (``fetch_layer``).
        cache: ResultCache of slices keyed by normalized temporal key.
        layers: ActiveLayerSet the results are applied to.
        layer_name: Temporal layer, e.g. ``Hidalgo:04_sequias``.
        field_name: Attribute holding the temporal key.
        debounce: Full debounce delay in seconds; half of it is used when the
            last completed fetch is older than ``rapid_threshold``.
        rapid_threshold: Seconds since the last completed fetch below which
            cursor moves count as rapid.
        max_features: ``limit`` passed to every slice fetch.
        clock: Monotonic clock (injectable for tests).
        bus: EventBus for ``temporal_state`` events.
    """

    def __init__(
        self,
        client,
        cache: ResultCache,
        layers: ActiveLayerSet,
        layer_name: str,
        field_name: str = DEFAULT_TEMPORAL_FIELD,
        *,
        debounce: float = 0.3,
        rapid_threshold: float = 0.2,
        max_features: int = 5000,
        clock: Callable[[], float] = time.monotonic,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.client = client
        self.cache = cache
        self.layers = layers
        self.layer_name = layer_name
        self.field_name = field_name
        self.debounce = debounce
        self.rapid_threshold = rapid_threshold
        self.max_features = max_features
        self._clock = clock
        self._bus = bus

        self.state = ControllerState.IDLE
        self.last_outcome: ControllerState | None = None
        self.current_key: str | None = None
        self.last_error: str | None = None

        self._last_requested: str | None = None
        self._last_fetch_time: float | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._token: CancelToken | None = None
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def last_requested_key(self) -> str | None:
        return self._last_requested

    @property
    def is_updating(self) -> bool:
        return self.state in (ControllerState.PENDING, ControllerState.FETCHING)

    def cache_info(self) -> dict:
        return {
            "size": len(self.cache),
            "capacity": self.cache.capacity,
            "keys": self.cache.keys(),
        }

    def snapshot(self) -> dict:
        return {
            "layer_name": self.layer_name,
            "state": self.state.value,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "current_key": self.current_key,
            "last_error": self.last_error,
        }

    def _set_state(self, state: ControllerState) -> None:
        if state in _TERMINAL:
            self.last_outcome = state
            self.state = ControllerState.IDLE
        else:
            self.state = state
        if self._bus is not None:
            self._bus.publish("temporal_state", {**self.snapshot(), "transition": state.value})

    def debounce_delay(self) -> float:
        """Delay before a debounced fetch starts."""
        if self._last_fetch_time is not None and self._clock() - self._last_fetch_time < self.rapid_threshold:
            return self.debounce
        return self.debounce / 2

    # ------------------------------------------------------------------
    # Cursor moves
    # ------------------------------------------------------------------

    def request(self, key: object) -> None:
        """Move the time cursor to ``key``. Never suspends.

        Invalid keys and repeats of the last requested key are ignored. A
        cached slice is applied immediately; otherwise a fetch is scheduled
        after the debounce delay, superseding any pending one.
        """
        normalized = normalize_temporal_key(key)
        if normalized is None:
            logger.error(f"Invalid temporal key: {key!r}")
            return
        if normalized == self._last_requested:
            return

        self.current_key = normalized
        self._last_requested = normalized
        self.layers.mark_loading(self.layer_name)
        self._cancel_timer()

        lookup = self.cache.lookup(normalized)
        if lookup.hit:
            logger.debug(f"Cache HIT for {normalized}")
            self._cancel_token()
            self._set_state(ControllerState.FETCHING)
            self._apply_cached(normalized, lookup.value)
            self.layers.clear_loading(self.layer_name)
            self._set_state(ControllerState.SETTLED)
            return

        delay = self.debounce_delay()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._start_fetch, normalized)
        self._set_state(ControllerState.PENDING)

    def _apply_cached(self, key: str, collection: FeatureCollection) -> None:
        self.layers.set_filter(self.layer_name, temporal_filter(key, self.field_name))
        self.layers.set_collection(self.layer_name, collection.with_metadata(from_cache=True))
        self.last_error = None

    def _start_fetch(self, key: str) -> None:
        self._timer = None
        if key != self._last_requested:
            return
        task = asyncio.get_running_loop().create_task(self._execute(key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, key: str) -> bool:
        cql_filter = temporal_filter(key, self.field_name)

        self._cancel_token()
        token = CancelToken(label=f"{self.layer_name}@{key}")
        self._token = token

        self.last_error = None
        self.layers.set_filter(self.layer_name, cql_filter)
        self._set_state(ControllerState.FETCHING)
        logger.debug(f"Fetching {self.layer_name} for {key} with filter {cql_filter}")

        try:
            collection = await self.client.fetch_layer(
                self.layer_name,
                cql_filter=cql_filter,
                limit=self.max_features,
                cancel_token=token,
            )

            if not self._owns(key, token):
                logger.debug(f"Response for {key} discarded: cursor moved to {self._last_requested}")
                return False

            self._last_fetch_time = self._clock()
            collection = collection.with_metadata(
                temporal_key=key,
                filter=cql_filter,
                from_cache=False,
                fetched_at=time.time(),
            )
            self.cache.put(key, collection)
            self.layers.set_collection(self.layer_name, collection)
            self._set_state(ControllerState.SETTLED)
            return True

        except Cancelled:
            logger.debug(f"Fetch for {key} cancelled (superseded)")
            if self._owns(key, token):
                self._set_state(ControllerState.CANCELLED)
            return False

        except QueryError as e:
            logger.warning(f"Temporal update of {self.layer_name} for {key} failed: {e}")
            if self._owns(key, token):
                self.last_error = str(e)
                self.layers.set_error(self.layer_name, str(e))
                self._set_state(ControllerState.FAILED)
            return False

        finally:
            if self._owns(key, token):
                self.layers.clear_loading(self.layer_name)
            if self._token is token:
                self._token = None

    def _owns(self, key: str, token: CancelToken) -> bool:
        # A fetch may settle state only while it is still the latest request
        # and no newer fetch or activation has replaced its token
        return key == self._last_requested and self._token is token

    # ------------------------------------------------------------------
    # Orchestrator entry point
    # ------------------------------------------------------------------

    async def activate(self, key: object) -> FeatureCollection:
        """Resolve the slice for ``key`` for a layer activation.

        Records ``key`` as the current cursor position, serves from the cache
        or fetches through it. Does not touch the ActiveLayerSet collection;
        the caller merges the result.

        Raises:
            MissingPrecondition: ``key`` is empty or invalid.
            Cancelled: the cursor moved before the fetch settled.
            QueryError: the fetch failed.
        """
        normalized = normalize_temporal_key(key)
        if normalized is None:
            raise MissingPrecondition(f"No valid temporal key to activate {self.layer_name} ({key!r})")

        cql_filter = temporal_filter(normalized, self.field_name)
        self.current_key = normalized
        self._last_requested = normalized
        self._cancel_timer()
        self.layers.set_filter(self.layer_name, cql_filter)

        lookup = self.cache.lookup(normalized)
        if lookup.hit:
            logger.debug(f"Cache HIT for {normalized} on activation")
            self._cancel_token()
            self._set_state(ControllerState.SETTLED)
            return lookup.value.with_metadata(from_cache=True)

        self._cancel_token()
        token = CancelToken(label=f"{self.layer_name}@{normalized}")
        self._token = token
        self._set_state(ControllerState.FETCHING)
        try:
            collection = await self.client.fetch_layer(
                self.layer_name,
                cql_filter=cql_filter,
                limit=self.max_features,
                cancel_token=token,
            )
        except QueryError as e:
            if self._owns(normalized, token):
                self.last_error = str(e)
                self._set_state(ControllerState.FAILED)
            raise
        finally:
            if self._token is token:
                self._token = None

        if normalized != self._last_requested:
            raise Cancelled(f"Activation of {self.layer_name} for {normalized} superseded")

        self._last_fetch_time = self._clock()
        collection = collection.with_metadata(
            temporal_key=normalized,
            filter=cql_filter,
            from_cache=False,
            fetched_at=time.time(),
        )
        self.cache.put(normalized, collection)
        self.last_error = None
        self._set_state(ControllerState.SETTLED)
        return collection

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def prefetch_adjacent(self, current_key: object, keys: Iterable[object]) -> list[str]:
        """Warm the cache with the neighbors of ``current_key`` in ``keys``.

        Neighbors already cached are skipped. Fetches run one after the other
        and never touch loading state; failures are ignored.

        Returns:
            Keys that were fetched and cached.
        """
        ordered = [k for k in (normalize_temporal_key(v) for v in keys) if k is not None]
        if len(ordered) < 2:
            return []
        prev_key, next_key = neighbors(current_key, ordered)

        fetched = []
        for key in (prev_key, next_key):
            if key is None or key in self.cache:
                continue
            cql_filter = temporal_filter(key, self.field_name)
            try:
                collection = await self.client.fetch_layer(
                    self.layer_name, cql_filter=cql_filter, limit=self.max_features,
                )
            except (QueryError, Cancelled) as e:
                logger.debug(f"Prefetch of {key} failed: {e}")
                continue
            self.cache.put(key, collection.with_metadata(
                temporal_key=key, filter=cql_filter, prefetched=True, fetched_at=time.time(),
            ))
            fetched.append(key)
        return fetched

    def suspend(self) -> None:
        """Drop the pending timer and in-flight fetch but keep the cursor.

        Used when the temporal layer is turned off; reactivating it resumes
        from ``current_key``.
        """
        busy = self._timer is not None or self._token is not None
        self._cancel_timer()
        self._cancel_token()
        if busy:
            self._set_state(ControllerState.CANCELLED)

    def cancel_pending(self) -> None:
        """Drop the pending timer and in-flight fetch, and forget the cursor."""
        was_busy = self.is_updating or self._timer is not None or self._token is not None
        self._cancel_timer()
        self._cancel_token()
        self.current_key = None
        self._last_requested = None
        self.layers.clear_loading(self.layer_name)
        if was_busy:
            self._set_state(ControllerState.CANCELLED)

    async def force_update(self, key: object) -> bool:
        """Cancel everything pending and update to ``key`` now, without debounce."""
        self.cancel_pending()
        normalized = normalize_temporal_key(key)
        if normalized is None:
            logger.error(f"force_update: invalid temporal key {key!r}")
            return False

        self.current_key = normalized
        self._last_requested = normalized
        self.layers.mark_loading(self.layer_name)

        lookup = self.cache.lookup(normalized)
        if lookup.hit:
            self._apply_cached(normalized, lookup.value)
            self.layers.clear_loading(self.layer_name)
            self._set_state(ControllerState.SETTLED)
            return True
        return await self._execute(normalized)

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.debug(f"Slice cache of {self.layer_name} cleared")

    async def drain(self) -> None:
        """Wait until no debounce timer is pending and no fetch is running."""
        loop = asyncio.get_running_loop()
        while self._timer is not None or self._tasks:
            if self._timer is not None:
                await asyncio.sleep(max(0.0, self._timer.when() - loop.time()))
            else:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        self._cancel_timer()
        self._cancel_token()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _cancel_token(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None
