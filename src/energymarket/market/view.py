from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from energymarket.errors import DecodeError, MarketError, UnsupportedSortKey
from energymarket.schemas import MarketStatus, Offer

QueryFn = Callable[..., Awaitable[Any]]
SnapshotListener = Callable[["MarketSnapshot"], None]


class SortKey(str, Enum):
    ID = "id"
    SELLER = "seller"
    ENERGY = "energy"
    PRICE = "price"
    SOURCE = "source"
    EXPIRY = "expiry"

    @classmethod
    def parse(cls, raw: str | SortKey) -> SortKey:
        if isinstance(raw, SortKey):
            return raw
        try:
            return cls(str(raw).lower())
        except ValueError as exc:
            allowed = ", ".join(k.value for k in cls)
            raise UnsupportedSortKey(f"unsupported sort key {raw!r}; expected one of: {allowed}") from exc


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


_SORT_FIELDS: dict[SortKey, Callable[[Offer], Any]] = {
    SortKey.ID: lambda offer: offer.offer_id,
    SortKey.SELLER: lambda offer: offer.seller,
    SortKey.ENERGY: lambda offer: offer.energy_amount,
    SortKey.PRICE: lambda offer: offer.price_per_unit,
    SortKey.SOURCE: lambda offer: offer.source.value,
    SortKey.EXPIRY: lambda offer: offer.expiry_ts,
}


def sort_offers(
    offers: Iterable[Offer],
    key: SortKey,
    direction: SortDirection = SortDirection.ASC,
) -> list[Offer]:
    """Stable sort: offers with equal keys keep their input order in either direction."""
    if not isinstance(key, SortKey):
        raise UnsupportedSortKey(f"sort key must be a SortKey, got {key!r}")
    # sorted(reverse=True) keeps equal elements in input order.
    return sorted(offers, key=_SORT_FIELDS[key], reverse=direction == SortDirection.DESC)


@dataclass(frozen=True)
class MarketSnapshot:
    status: MarketStatus | None
    offers: tuple[Offer, ...]
    refreshed_ts: datetime | None


_EMPTY = MarketSnapshot(status=None, offers=(), refreshed_ts=None)


class MarketView:
    """Session-local cache of market status and active offers.

    Only this class writes the cache, and a refresh publishes both halves or
    neither.
    """

    def __init__(
        self,
        query: QueryFn,
        *,
        refresh_interval_s: float = 30.0,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._query = query
        self._refresh_interval_s = refresh_interval_s
        self._now = now
        self._snapshot = _EMPTY
        self._last_error: MarketError | None = None
        self._listeners: list[SnapshotListener] = []
        self._refresh_lock = asyncio.Lock()
        self._generation = 0
        self._task: asyncio.Task[None] | None = None
        self._log = logging.getLogger(self.__class__.__name__)

    def snapshot(self) -> MarketSnapshot:
        return self._snapshot

    def status(self) -> MarketStatus | None:
        return self._snapshot.status

    def offers(self) -> tuple[Offer, ...]:
        now = self._now()
        return tuple(offer for offer in self._snapshot.offers if offer.is_live(now))

    @property
    def last_error(self) -> MarketError | None:
        return self._last_error

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    async def refresh(self) -> MarketSnapshot:
        generation = self._generation
        async with self._refresh_lock:
            try:
                status = await self._query("get_market_status")
                listed = await self._query("get_active_offers")
                offers = await self._hydrate(listed)
            except MarketError as exc:
                self._last_error = exc
                self._log.warning("market_refresh_failed error=%s", exc)
                raise
            if not isinstance(status, MarketStatus):
                exc = DecodeError(f"get_market_status decoded to {type(status).__name__}")
                self._last_error = exc
                raise exc

            if generation != self._generation:
                self._log.info("market_refresh_discarded reason=torn_down")
                return self._snapshot

            now = self._now()
            snapshot = MarketSnapshot(
                status=status,
                offers=tuple(offer for offer in offers if offer.is_live(now)),
                refreshed_ts=now,
            )
            self._snapshot = snapshot
            self._last_error = None

        self._log.info(
            "market_refreshed",
            extra={
                "extra_fields": {
                    "active_offers": status.active_offer_count,
                    "cached_offers": len(snapshot.offers),
                    "completed_trades": status.completed_trade_count,
                    "total_energy_traded": status.total_energy_traded,
                }
            },
        )
        for listener in list(self._listeners):
            listener(snapshot)
        return snapshot

    async def on_offer_created(self) -> bool:
        # The new offer may not be visible yet; an unchanged cache is not an error.
        try:
            await self.refresh()
        except MarketError as exc:
            self._log.warning("post_write_refresh_failed error=%s", exc)
            return False
        return True

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._poll(self._generation), name="market-view-refresh")
        self._log.info("market_view_started interval_s=%s", self._refresh_interval_s)

    async def stop(self) -> None:
        self._generation += 1
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._log.info("market_view_stopped")

    async def _poll(self, generation: int) -> None:
        while generation == self._generation:
            inner = asyncio.ensure_future(self.refresh())
            try:
                # Shielded so a stop() lets the network call finish; its result is discarded.
                await asyncio.shield(inner)
            except asyncio.CancelledError:
                inner.add_done_callback(self._collect_orphan)
                raise
            except MarketError as exc:
                self._log.info("market_poll_continue error_type=%s", exc.__class__.__name__)
            except Exception as exc:
                self._log.warning("market_poll_error error=%s", exc)
            await asyncio.sleep(self._refresh_interval_s)

    def _collect_orphan(self, task: asyncio.Future[MarketSnapshot]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.info("market_refresh_orphaned error_type=%s", exc.__class__.__name__)

    async def _hydrate(self, listed: Any) -> tuple[Offer, ...]:
        if not isinstance(listed, tuple):
            raise DecodeError(f"get_active_offers decoded to {type(listed).__name__}")
        if all(isinstance(item, Offer) for item in listed):
            return listed
        if all(isinstance(item, int) for item in listed):
            offers = []
            for offer_id in listed:
                offer = await self._query("get_offer", offer_id)
                if not isinstance(offer, Offer):
                    raise DecodeError(f"get_offer({offer_id}) decoded to {type(offer).__name__}")
                offers.append(offer)
            return tuple(offers)
        raise DecodeError("get_active_offers mixed ids and offers")
