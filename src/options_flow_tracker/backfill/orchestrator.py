"""Historical trade reconciliation.

Three pipelines share one drain loop and differ only in range, instrument
universe and failure policy:

- delta catch-up: ``[snapshot ts or now - 7d, now]`` over every known
  instrument, best effort; on completion the watermark is persisted.
- full reconstruction: ``[max(0, min(now, expiry) - 120d), now]`` per live
  instrument with an adaptive window; failed windows are re-enqueued so the
  range is always covered completely.
- manual range: operator-chosen instruments and lookback hours; quotes are
  prefetched first so trades get real deltas, and the burst detector is fed.

The drain loop dispatches from a FIFO queue while fewer than ``max_in_flight``
fetches are pending, then waits for the first completion. Completions are
applied to the engine inside the loop itself, so the engine keeps a single
writer. A run finishes when nothing is queued or in flight, which sets the
pipeline's one-shot done event.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from options_flow_tracker.clock import DAY_MS, HOUR_MS, MINUTE_MS
from options_flow_tracker.engine import FlowEngine, TradeSource
from options_flow_tracker.ingestor.deribit_client import (
    DeribitClientError,
    DeribitParseError,
    DeribitTransientError,
    RetryError,
)
from options_flow_tracker.ingestor.models import TickerUpdate

logger = logging.getLogger(__name__)


class BackfillKind(str, Enum):
    DELTA = "delta"
    FULL = "full"
    MANUAL = "manual"


class BackfillError(Exception):
    """Raised when a backfill run cannot be started."""


class TradeHistorySource(Protocol):
    async def get_last_trades_by_instrument_and_time(
        self,
        instrument: str,
        start_ms: int,
        end_ms: int,
        *,
        count: int = ...,
    ) -> list[dict[str, Any]]: ...

    async def get_ticker(self, instrument: str) -> TickerUpdate: ...


WatermarkSink = Callable[[int], Awaitable[None]]


@dataclass(frozen=True)
class BackfillConfig:
    max_in_flight: int = 8
    page_size: int = 1000
    grow_below_rows: int = 800
    initial_window_ms: int = 6 * HOUR_MS
    min_window_ms: int = 5 * MINUTE_MS
    max_window_ms: int = 24 * HOUR_MS
    grow_factor: float = 1.5
    delta_lookback_ms: int = 7 * DAY_MS
    full_lookback_ms: int = 120 * DAY_MS
    record_windows: bool = False  # keep every fetched (instrument, from, end) in the stats


@dataclass(frozen=True)
class FetchTask:
    """One instrument's remaining range; ``step_ms`` bounds the next window."""

    instrument: str
    from_ms: int
    to_ms: int
    step_ms: int
    resumed: bool = False

    def window_end(self) -> int:
        return min(self.from_ms + self.step_ms - 1, self.to_ms)


@dataclass
class BackfillStats:
    kind: BackfillKind
    from_ms: int = 0
    to_ms: int = 0
    instruments: int = 0
    windows_fetched: int = 0
    rows: int = 0
    applied: int = 0
    duplicates: int = 0
    signals: int = 0
    failures: int = 0
    retries: int = 0
    parse_errors: int = 0
    invalid_ranges: int = 0
    truncations: int = 0
    fetched_windows: list[tuple[str, int, int]] = field(default_factory=list)


@dataclass(frozen=True)
class _Policy:
    kind: BackfillKind
    source: TradeSource
    adaptive: bool
    retry_failures: bool
    feed_bursts: bool


_POLICIES = {
    BackfillKind.DELTA: _Policy(BackfillKind.DELTA, TradeSource.DELTA, False, False, False),
    BackfillKind.FULL: _Policy(BackfillKind.FULL, TradeSource.FULL, True, True, False),
    BackfillKind.MANUAL: _Policy(BackfillKind.MANUAL, TradeSource.MANUAL, False, False, True),
}


class BackfillOrchestrator:
    """Runs the delta, full and manual pipelines against one engine.

    Example:
        ```python
        orchestrator = BackfillOrchestrator(engine, client, watermark_sink=store.save_watermark)
        stats = await orchestrator.run_delta_catchup(snapshot_ts)
        await orchestrator.done[BackfillKind.DELTA].wait()
        ```
    """

    def __init__(
        self,
        engine: FlowEngine,
        source: TradeHistorySource,
        *,
        config: BackfillConfig | None = None,
        watermark_sink: WatermarkSink | None = None,
    ) -> None:
        self._engine = engine
        self._source = source
        self._cfg = config or BackfillConfig()
        self._watermark_sink = watermark_sink
        self.done: dict[BackfillKind, asyncio.Event] = {kind: asyncio.Event() for kind in BackfillKind}
        self._running: set[BackfillKind] = set()
        self._last_stats: dict[BackfillKind, BackfillStats] = {}

    @property
    def config(self) -> BackfillConfig:
        return self._cfg

    def is_running(self, kind: BackfillKind) -> bool:
        return kind in self._running

    def last_stats(self, kind: BackfillKind) -> BackfillStats | None:
        return self._last_stats.get(kind)

    async def run_delta_catchup(self, last_snapshot_ts: int = 0) -> BackfillStats:
        """Catch up every known instrument from the last snapshot (or 7 days) to now."""
        now = self._engine.clock.now_ms()
        from_ms = last_snapshot_ts if last_snapshot_ts > 0 else now - self._cfg.delta_lookback_ms
        instruments = self._engine.registry.names()
        stats = BackfillStats(kind=BackfillKind.DELTA, from_ms=from_ms, to_ms=now, instruments=len(instruments))

        if not instruments or from_ms >= now:
            logger.info("Delta catch-up has nothing to do (instruments=%d)", len(instruments))
            await self._finish(BackfillKind.DELTA, stats)
            return stats

        tasks = [FetchTask(name, from_ms, now, now - from_ms + 1) for name in instruments]
        return await self._run(BackfillKind.DELTA, tasks, stats)

    async def run_full_reconstruction(self) -> BackfillStats:
        """Rebuild history of every live instrument with adaptive windows."""
        now = self._engine.clock.now_ms()
        live = self._engine.registry.live_names(now)
        stats = BackfillStats(kind=BackfillKind.FULL, to_ms=now, instruments=len(live))

        tasks = []
        for name in live:
            expiry = self._engine.registry.expiry_of(name)
            from_ms = max(0, min(now, expiry) - self._cfg.full_lookback_ms)
            stats.from_ms = from_ms if not tasks else min(stats.from_ms, from_ms)
            tasks.append(FetchTask(name, from_ms, now, self._cfg.initial_window_ms))
        return await self._run(BackfillKind.FULL, tasks, stats)

    async def run_manual(self, instruments: Iterable[str], hours: float) -> BackfillStats:
        """Fetch the last ``hours`` of trades for the given instruments.

        Raises:
            BackfillError: If no instrument is given or ``hours`` is not positive.
        """
        targets = sorted({i for i in instruments if i})
        if not targets:
            raise BackfillError("Manual backfill needs at least one instrument")
        if hours <= 0:
            raise BackfillError("Manual backfill needs a positive lookback")

        now = self._engine.clock.now_ms()
        from_ms = now - int(hours * HOUR_MS)
        stats = BackfillStats(kind=BackfillKind.MANUAL, from_ms=from_ms, to_ms=now, instruments=len(targets))

        self._engine.bursts.clear()
        await self._prefetch_tickers(targets)

        tasks = [FetchTask(name, from_ms, now, now - from_ms + 1) for name in targets]
        return await self._run(BackfillKind.MANUAL, tasks, stats)

    async def _prefetch_tickers(self, instruments: list[str]) -> None:
        semaphore = asyncio.Semaphore(self._cfg.max_in_flight)

        async def fetch(name: str) -> TickerUpdate:
            async with semaphore:
                return await self._source.get_ticker(name)

        results = await asyncio.gather(*(fetch(n) for n in instruments), return_exceptions=True)
        loaded = 0
        for name, result in zip(instruments, results, strict=True):
            if isinstance(result, TickerUpdate):
                self._engine.apply_ticker(result)
                loaded += 1
            else:
                logger.warning("Ticker prefetch failed for %s: %s", name, result)
        logger.info("Prefetched %d/%d tickers before manual backfill", loaded, len(instruments))

    async def _run(self, kind: BackfillKind, tasks: list[FetchTask], stats: BackfillStats) -> BackfillStats:
        if kind in self._running:
            raise BackfillError(f"{kind.value} backfill already running")
        self._running.add(kind)
        self.done[kind].clear()
        policy = _POLICIES[kind]
        logger.info(
            "Starting %s backfill: %d instruments, range [%d, %d]",
            kind.value,
            len(tasks),
            stats.from_ms,
            stats.to_ms,
        )

        queue: deque[FetchTask] = deque(tasks)
        in_flight: dict[asyncio.Task[list[dict[str, Any]]], tuple[FetchTask, int]] = {}
        try:
            while queue or in_flight:
                while queue and len(in_flight) < self._cfg.max_in_flight:
                    task = queue.popleft()
                    if task.from_ms > task.to_ms or (task.from_ms == task.to_ms and not task.resumed):
                        logger.warning(
                            "Skipping %s backfill of %s: invalid range [%d, %d]",
                            kind.value,
                            task.instrument,
                            task.from_ms,
                            task.to_ms,
                        )
                        stats.invalid_ranges += 1
                        continue
                    window_end = task.window_end()
                    fetch = asyncio.create_task(
                        self._source.get_last_trades_by_instrument_and_time(
                            task.instrument,
                            task.from_ms,
                            window_end,
                            count=self._cfg.page_size,
                        )
                    )
                    in_flight[fetch] = (task, window_end)

                if not in_flight:
                    break

                finished, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for fetch in finished:
                    task, window_end = in_flight.pop(fetch)
                    self._complete(policy, stats, queue, task, window_end, fetch)
        except BaseException:
            for fetch in in_flight:
                fetch.cancel()
            raise
        finally:
            self._running.discard(kind)

        await self._finish(kind, stats)
        return stats

    def _complete(
        self,
        policy: _Policy,
        stats: BackfillStats,
        queue: deque[FetchTask],
        task: FetchTask,
        window_end: int,
        fetch: asyncio.Task[list[dict[str, Any]]],
    ) -> None:
        try:
            rows = fetch.result()
        except DeribitParseError as e:
            stats.parse_errors += 1
            logger.warning(
                "%s backfill of %s returned an unreadable body: %s %r",
                policy.kind.value,
                task.instrument,
                e,
                e.excerpt,
            )
            rows = []
        except (DeribitTransientError, RetryError) as e:
            stats.failures += 1
            if policy.retry_failures:
                stats.retries += 1
                logger.warning(
                    "%s backfill of %s [%d, %d] failed, re-enqueued: %s",
                    policy.kind.value,
                    task.instrument,
                    task.from_ms,
                    window_end,
                    e,
                )
                queue.append(task)
            else:
                logger.warning("%s backfill of %s failed, skipped: %s", policy.kind.value, task.instrument, e)
            return
        except DeribitClientError as e:
            stats.failures += 1
            logger.warning("%s backfill of %s rejected, skipped: %s", policy.kind.value, task.instrument, e)
            return

        stats.windows_fetched += 1
        truncated = len(rows) >= self._cfg.page_size

        if policy.adaptive and truncated and task.step_ms > self._cfg.min_window_ms:
            # Too many rows for one page: retry the same start with a smaller window.
            stats.truncations += 1
            smaller = max(self._cfg.min_window_ms, task.step_ms // 2)
            queue.appendleft(FetchTask(task.instrument, task.from_ms, task.to_ms, smaller, task.resumed))
            return

        if self._cfg.record_windows:
            stats.fetched_windows.append((task.instrument, task.from_ms, window_end))
        last_ts = self._apply_rows(policy, stats, rows)

        step = task.step_ms
        if policy.adaptive and len(rows) < self._cfg.grow_below_rows:
            step = min(self._cfg.max_window_ms, int(step * self._cfg.grow_factor))

        if truncated and last_ts > 0:
            resume = last_ts + 1
        elif rows and policy.adaptive:
            resume = max(last_ts, task.from_ms) + 1
        else:
            resume = window_end + 1

        if resume <= task.to_ms:
            queue.appendleft(FetchTask(task.instrument, resume, task.to_ms, step, resumed=True))

    def _apply_rows(self, policy: _Policy, stats: BackfillStats, rows: list[dict[str, Any]]) -> int:
        last_ts = 0
        min_size = self._engine.threshold.big_unit_for_backfill()
        for row in sorted(rows, key=lambda r: int(r.get("timestamp") or 0)):
            trade = self._engine.parse_trade(row)
            if trade is None:
                continue
            stats.rows += 1
            last_ts = max(last_ts, trade.timestamp_ms)
            outcome = self._engine.process_trade(
                trade,
                source=policy.source,
                feed_bursts=policy.feed_bursts,
                min_size=min_size,
            )
            if outcome.duplicate:
                stats.duplicates += 1
            if outcome.applied:
                stats.applied += 1
            if outcome.signal is not None:
                stats.signals += 1
        return last_ts

    async def _finish(self, kind: BackfillKind, stats: BackfillStats) -> None:
        self._last_stats[kind] = stats
        if kind is BackfillKind.DELTA and self._watermark_sink is not None:
            try:
                await self._watermark_sink(stats.to_ms)
            except Exception as e:
                logger.warning("Failed to persist backfill watermark: %s", e)
        self._engine.rebuild_signals()
        self.done[kind].set()
        logger.info(
            "%s backfill done: windows=%d rows=%d applied=%d dup=%d failures=%d parse_errors=%d",
            kind.value,
            stats.windows_fetched,
            stats.rows,
            stats.applied,
            stats.duplicates,
            stats.failures,
            stats.parse_errors,
        )
