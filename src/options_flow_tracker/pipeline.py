"""Main pipeline orchestrator for Options Flow Tracker.

This module provides the Pipeline class that wires the Deribit stream, the
flow engine, backfill pipelines and snapshot persistence together and
manages the event flow from ingestion to signal publishing.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from options_flow_tracker.backfill.orchestrator import (
    BackfillConfig,
    BackfillKind,
    BackfillOrchestrator,
    BackfillStats,
)
from options_flow_tracker.clock import DAY_MS, HOUR_MS, Clock, SystemClock
from options_flow_tracker.config import Settings, get_settings
from options_flow_tracker.detector.analytics import GreeksSolver
from options_flow_tracker.detector.models import Signal
from options_flow_tracker.engine import EngineConfig, FlowEngine, TradeSource
from options_flow_tracker.ingestor.deribit_client import DeribitClient, DeribitClientError, RetryError
from options_flow_tracker.ingestor.models import TickerUpdate
from options_flow_tracker.ingestor.websocket import DeribitStreamHandler
from options_flow_tracker.storage.snapshot import SnapshotError, SnapshotStore

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Pipeline runtime statistics."""

    started_at: datetime | None = None
    trades_processed: int = 0
    tickers_processed: int = 0
    signals_emitted: int = 0
    signals_published: int = 0
    snapshots_saved: int = 0
    errors: int = 0
    last_error: str | None = None


def engine_config_from_settings(settings: Settings) -> EngineConfig:
    return EngineConfig(
        manual_big_unit=settings.flow.manual_big_unit,
        display_min_size=settings.flow.display_min_size,
        expiry_filter_ms=settings.flow.expiry_filter_ms,
        max_snapshot_samples=settings.snapshot.max_amount_samples,
    )


def backfill_config_from_settings(settings: Settings) -> BackfillConfig:
    return BackfillConfig(
        max_in_flight=settings.backfill.max_in_flight,
        page_size=settings.backfill.page_size,
        initial_window_ms=int(settings.backfill.initial_window_hours * HOUR_MS),
        delta_lookback_ms=settings.backfill.delta_lookback_days * DAY_MS,
        full_lookback_ms=settings.backfill.full_lookback_days * DAY_MS,
    )


class Pipeline:
    """Options flow pipeline.

    Startup restores the last snapshot, loads the option chain and the
    reference price, subscribes to the live feeds and launches the startup
    backfills. Live prints and backfilled history both go through the same
    ``FlowEngine``; fired signals are logged and published to a Redis stream.

    Example:
        ```python
        from options_flow_tracker.pipeline import Pipeline

        pipeline = Pipeline()
        await pipeline.start()
        # Pipeline runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        clock: Clock | None = None,
        solver: GreeksSolver | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, skip publishing signals. Overrides settings.dry_run.
            clock: Time source; defaults to the wall clock.
            solver: Optional Greeks solver used for per-trade IV.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run
        self._clock = clock or SystemClock()

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        self._engine = FlowEngine(
            self._clock,
            config=engine_config_from_settings(self._settings),
            solver=solver,
            on_signal=self._on_signal,
        )

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._client: DeribitClient | None = None
        self._snapshot_store: SnapshotStore | None = None
        self._backfill: BackfillOrchestrator | None = None
        self._stream: DeribitStreamHandler | None = None
        self._snapshot_ts = 0

        self._iv_pending: dict[str, None] = {}
        self._publish_tasks: set[asyncio.Task[None]] = set()

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[Any]] = []

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def engine(self) -> FlowEngine:
        return self._engine

    @property
    def backfill(self) -> BackfillOrchestrator | None:
        return self._backfill

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    async def start(self, *, live: bool = True) -> None:
        """Start the pipeline.

        Args:
            live: Subscribe to the stream and start background loops. With
                False only the stores and clients are prepared, which is
                what a one-off manual backfill needs.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            if live:
                await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Stops all background services, saves a final snapshot and cleans up
        resources.
        """
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._save_snapshot()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings

        logger.debug("Initializing Redis connection...")
        self._redis = Redis.from_url(settings.redis.url)
        self._snapshot_store = SnapshotStore(
            self._redis,
            self._clock,
            key=settings.snapshot.key,
            watermark_key=settings.snapshot.watermark_key,
        )

        logger.debug("Initializing Deribit client...")
        self._client = DeribitClient(
            settings.deribit.rest_url,
            max_requests_per_second=settings.deribit.max_requests_per_second,
            timeout_seconds=settings.deribit.request_timeout_seconds,
        )
        self._backfill = BackfillOrchestrator(
            self._engine,
            self._client,
            config=backfill_config_from_settings(settings),
            watermark_sink=self._snapshot_store.save_watermark,
        )

        snapshot = await self._snapshot_store.load()
        if snapshot is not None:
            self._engine.restore_snapshot(snapshot)
            self._snapshot_ts = snapshot.ts

        await self._load_instruments()
        await self._refresh_reference_price()
        rows = self._engine.rebuild_signals()
        logger.info("All components initialized (%d signal rows)", len(rows))

    async def _load_instruments(self) -> None:
        if not self._client:
            return
        try:
            instruments = await self._client.get_instruments(self._settings.deribit.currency)
        except (DeribitClientError, RetryError) as e:
            logger.error("Failed to load instruments: %s", e)
            self._record_error(e)
            return
        self._engine.registry.load(instruments)

    async def _refresh_reference_price(self) -> None:
        if not self._client:
            return
        try:
            ticker = await self._client.get_ticker(self._settings.deribit.reference_instrument)
        except (DeribitClientError, RetryError) as e:
            logger.warning("Failed to refresh reference price: %s", e)
            return
        self._engine.reference.update(ticker.reference_price, self._clock.now_ms())

    async def _start_background_services(self) -> None:
        """Start background services."""
        settings = self._settings
        self._stream = DeribitStreamHandler(host=settings.deribit.ws_url, on_message=self._on_channel_message)
        channels = self._engine.registry.subscription_channels(
            currency=settings.deribit.currency,
            reference_price=self._engine.reference.price,
            now_ms=self._clock.now_ms(),
            per_side=settings.flow.strikes_per_side,
            moneyness_band=settings.flow.moneyness_band,
        )
        await self._stream.subscribe(channels)

        self._tasks = [
            asyncio.create_task(self._run_stream()),
            asyncio.create_task(self._run_periodic(settings.flow.oi_poll_interval_seconds, self._poll_open_interest)),
            asyncio.create_task(
                self._run_periodic(settings.flow.reference_refresh_seconds, self._refresh_reference_price)
            ),
            asyncio.create_task(self._run_periodic(settings.snapshot.interval_seconds, self._save_snapshot)),
            asyncio.create_task(self._run_iv_refresh_loop()),
            asyncio.create_task(self._run_startup_backfills()),
        ]

    async def _run_stream(self) -> None:
        """Run the Deribit stream in a task."""
        if not self._stream:
            return
        try:
            await self._stream.start()
        except asyncio.CancelledError:
            logger.debug("Deribit stream task cancelled")
        except Exception as e:
            logger.error("Deribit stream error: %s", e)
            self._record_error(e)

    async def _run_periodic(self, interval: float, job: Any) -> None:
        if not self._stop_event:
            return
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    break
                except TimeoutError:
                    pass
                await job()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Periodic job %s error: %s", getattr(job, "__name__", job), e)
                self._record_error(e)

    async def _run_iv_refresh_loop(self) -> None:
        """Fetch tickers one at a time for traded instruments without a mark IV."""
        if not self._stop_event:
            return
        interval = self._settings.flow.iv_refresh_interval_ms / 1000.0
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    break
                except TimeoutError:
                    pass
                if not self._iv_pending or not self._client:
                    continue
                name = next(iter(self._iv_pending))
                del self._iv_pending[name]
                ticker = await self._client.get_ticker(name)
                self._engine.apply_ticker(ticker)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.debug("IV refresh error: %s", e)

    async def _run_startup_backfills(self) -> None:
        if not self._backfill:
            return
        cfg = self._settings.backfill
        jobs = []
        if cfg.delta_on_startup:
            since = self._snapshot_ts
            if since <= 0 and self._snapshot_store:
                # No snapshot: resume from the last reconciled delta run, if any.
                since = await self._snapshot_store.load_watermark(default=0)
            jobs.append(self._backfill.run_delta_catchup(since))
        if cfg.full_on_startup and (self._snapshot_ts <= 0 or cfg.full_with_snapshot):
            jobs.append(self._backfill.run_full_reconstruction())
        if not jobs:
            return
        try:
            results = await asyncio.gather(*jobs, return_exceptions=True)
        except asyncio.CancelledError:
            logger.debug("Startup backfill cancelled")
            return
        for result in results:
            if isinstance(result, BaseException):
                logger.error("Startup backfill failed: %s", result)
                self._record_error(result)
        await self._save_snapshot()

    async def run_manual_backfill(self, instruments: list[str], hours: float) -> BackfillStats:
        """Run a manual-range backfill and persist the result."""
        if not self._backfill:
            raise RuntimeError("Pipeline is not started")
        stats = await self._backfill.run_manual(instruments, hours)
        await self._save_snapshot()
        return stats

    async def _poll_open_interest(self) -> None:
        if not self._client:
            return
        rows = await self._client.get_book_summary_by_currency(self._settings.deribit.currency)
        self._engine.open_interest.apply_book_summary(rows, self._engine.registry)

    async def _save_snapshot(self) -> None:
        if not self._snapshot_store:
            return
        try:
            await self._snapshot_store.save(self._engine.export_snapshot())
            self._stats.snapshots_saved += 1
        except SnapshotError as e:
            logger.warning("%s", e)
            self._record_error(e)

    async def _on_channel_message(self, channel: str, data: Any) -> None:
        """Handle one subscription message from the stream."""
        try:
            if channel.startswith("trades."):
                rows = data if isinstance(data, list) else (data or {}).get("trades", [])
                for row in rows:
                    if isinstance(row, dict):
                        self._on_live_trade(row)
            elif channel.startswith("ticker.") and isinstance(data, dict):
                self._engine.apply_ticker(TickerUpdate.from_dict(data))
                self._stats.tickers_processed += 1
        except Exception as e:
            logger.error("Error processing %s message: %s", channel, e)
            self._record_error(e)

    def _on_live_trade(self, row: dict[str, Any]) -> None:
        trade = self._engine.parse_trade(row)
        if trade is None:
            return
        outcome = self._engine.process_trade(trade, source=TradeSource.LIVE)
        if outcome.duplicate:
            return
        self._stats.trades_processed += 1
        if outcome.applied and self._engine.greeks.iv(trade.instrument) <= 0:
            self._iv_pending.setdefault(trade.instrument, None)

    def _on_signal(self, signal: Signal) -> None:
        self._stats.signals_emitted += 1
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._publish_signal(signal))
        self._publish_tasks.add(task)
        task.add_done_callback(self._publish_tasks.discard)

    async def _publish_signal(self, signal: Signal) -> None:
        payload = json.dumps(signal.to_dict())
        if self._dry_run or not self._redis:
            logger.info("[DRY RUN] Signal: %s", payload)
            return
        try:
            await self._redis.xadd(
                self._settings.signal_stream_key,
                {"data": payload},
                maxlen=self._settings.signal_stream_maxlen,
                approximate=True,
            )
            self._stats.signals_published += 1
        except Exception as e:
            logger.warning("Failed to publish signal %s: %s", signal.key, e)
            self._record_error(e)

    def _record_error(self, error: BaseException) -> None:
        self._stats.errors += 1
        self._stats.last_error = str(error)

    async def _stop_background_services(self) -> None:
        """Stop background services."""
        if self._stream:
            logger.debug("Stopping Deribit stream...")
            await self._stream.stop()

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []

        if self._publish_tasks:
            await asyncio.gather(*self._publish_tasks, return_exceptions=True)

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._client:
            await self._client.close()
            self._client = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the pipeline and run until interrupted.

        Example:
            ```python
            pipeline = Pipeline()
            try:
                await pipeline.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
