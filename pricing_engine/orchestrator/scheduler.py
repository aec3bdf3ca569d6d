"""
Card Price Engine — Pricing Sync Scheduler
═══════════════════════════════════════════════════════════════════════

Keeps the persistent store fresh independently of read traffic, so cold
and rarely-viewed cards never silently rot to Expired.

Every SYNC_INTERVAL (12h by default):

  Idle → Selecting → Fetching ⇄ Writing → Idle
                         │          │
                         └──→ Failed ←┘ → Idle

  Selecting   keys that failed last run first, then the N most-stale
              records (oldest fetched_at first, ties by item key),
              skipping records tied at the previous run's boundary
  Fetching    provider-sized batches, strictly one after another, so
              the scheduler never outruns the client's rate limit
  Writing     upsert into the store; update the cache only for keys it
              already holds

A failed batch is retried once at the end of the run. Keys still failing
are retried first on the next run, then left to the normal rotation.
A RateLimited answer ends the run (Failed → Idle) so the provider gets
a break until the next interval. Nothing here ever raises out of a run.

Read-path refreshes and the scheduler share the per-key refresh slot:
whoever holds it does the fetch, the other side skips that key.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pricing_engine import config
from pricing_engine.cache.memory_cache import InMemoryPriceCache
from pricing_engine.errors import RateLimited, StoreUnavailable, UpstreamError
from pricing_engine.models.price_record import PriceRecord
from pricing_engine.store.base import PersistentPriceStore, SyncCursor
from pricing_engine.upstream.client import RateLimitedUpstreamClient

log = logging.getLogger("pe.scheduler")

JOB_ID  = "price_sync"
GRACE_S = 300   # 5-minute misfire grace window


class SyncState(str, Enum):
    IDLE      = "idle"
    SELECTING = "selecting"
    FETCHING  = "fetching"
    WRITING   = "writing"
    FAILED    = "failed"


@dataclass
class SyncRunReport:
    run_id:            int
    started_at:        float
    finished_at:       Optional[float] = None
    status:            str = "running"     # "completed" | "failed" | "skipped"
    selected:          int = 0
    retried_keys:      List[str] = field(default_factory=list)
    refreshed_keys:    List[str] = field(default_factory=list)
    skipped_in_flight: List[str] = field(default_factory=list)
    failed_keys:       List[str] = field(default_factory=list)
    failed_batches:    int = 0
    retried_batches:   int = 0
    rate_limited:      bool = False
    error:             Optional[str] = None

    @property
    def duration_s(self) -> float:
        end = self.finished_at or time.time()
        return round(end - self.started_at, 2)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["duration_s"] = self.duration_s
        return d


class SyncScheduler:

    def __init__(self, store: PersistentPriceStore,
                 client: RateLimitedUpstreamClient,
                 cache: InMemoryPriceCache,
                 batch_count: int = config.SYNC_BATCH_COUNT,
                 interval_s: float = config.SYNC_INTERVAL_S):
        if batch_count <= 0:
            raise ValueError("batch_count must be positive")
        self.store       = store
        self.client      = client
        self.cache       = cache
        self.batch_count = batch_count
        self.interval_s  = interval_s

        self.state       = SyncState.IDLE
        self.transitions: Deque[SyncState] = deque(maxlen=64)
        self.cursor: Optional[SyncCursor] = None
        self.last_report: Optional[SyncRunReport] = None
        self.history: Deque[SyncRunReport] = deque(maxlen=20)

        self._retry_keys: List[str] = []
        self._in_run     = False
        self._runs       = 0
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._manual: Optional[asyncio.Task] = None

    def _set_state(self, state: SyncState):
        self.state = state
        self.transitions.append(state)

    # ─────────────────────────────────────────────────────────
    # ONE RUN
    # ─────────────────────────────────────────────────────────

    async def run_once(self) -> SyncRunReport:
        self._runs += 1
        report = SyncRunReport(run_id=self._runs, started_at=time.time())
        if self._in_run:
            report.status = "skipped"
            report.finished_at = report.started_at
            log.info(f"[sync #{report.run_id}] Previous run still active — skipped")
            return report

        self._in_run = True
        selected: List[str] = []
        t0 = time.monotonic()
        try:
            self._set_state(SyncState.SELECTING)
            records = await self._select(report)
            selected = [r.item_key for r in records]
            report.selected = len(selected)
            log.info(f"[sync #{report.run_id}] Starting — {len(selected)} records "
                     f"({len(report.retried_keys)} retries)")

            retry_later: List[List[str]] = []
            for batch in self.client.chunk(selected):
                if not await self._sync_batch(batch, report):
                    retry_later.append(batch)

            for batch in retry_later:
                report.retried_batches += 1
                log.info(f"[sync #{report.run_id}] Retrying batch of {len(batch)}")
                if not await self._sync_batch(batch, report):
                    report.failed_batches += 1

            report.status = "completed"

        except RateLimited as e:
            report.rate_limited = True
            report.status = "failed"
            report.error = f"rate limited: {e}"
            self._set_state(SyncState.FAILED)
            log.warning(f"[sync #{report.run_id}] Provider rate limit — pausing until next run")
        except Exception as e:
            report.status = "failed"
            report.error = f"{type(e).__name__}: {e}"[:200]
            self._set_state(SyncState.FAILED)
            log.error(f"[sync #{report.run_id}] Run failed: {report.error}")
        finally:
            done = set(report.refreshed_keys) | set(report.skipped_in_flight)
            report.failed_keys = [k for k in selected if k not in done]
            already_retried = set(report.retried_keys)
            self._retry_keys = [k for k in report.failed_keys if k not in already_retried]

            report.finished_at = time.time()
            self.last_report = report
            self.history.append(report)
            self._set_state(SyncState.IDLE)
            self._in_run = False

        elapsed = round(time.monotonic() - t0, 1)
        log.info(f"[sync #{report.run_id}] Done — {report.status}: "
                 f"{len(report.refreshed_keys)} refreshed  {len(report.failed_keys)} failed  "
                 f"{len(report.skipped_in_flight)} in flight elsewhere  {elapsed}s")
        return report

    async def _select(self, report: SyncRunReport) -> List[PriceRecord]:
        chosen: Dict[str, PriceRecord] = {}

        retry, self._retry_keys = self._retry_keys, []
        if retry:
            found = await self.store.get_many(retry)
            for key in retry:
                if key in found and len(chosen) < self.batch_count:
                    chosen[key] = found[key]
            report.retried_keys = list(chosen)

        need = self.batch_count - len(chosen)
        if need <= 0:
            return list(chosen.values())

        # Always rank from the oldest record. The cursor only steps past
        # records tied at the previous boundary that were handed out already.
        last: Optional[PriceRecord] = None
        after: Optional[SyncCursor] = None
        deferred: List[PriceRecord] = []
        while len(chosen) < self.batch_count:
            page = await self.store.get_most_stale(need, after=after)
            for record in page:
                if record.item_key in chosen:
                    continue
                if self._behind_boundary(record):
                    deferred.append(record)
                    continue
                chosen[record.item_key] = record
                last = record
                if len(chosen) >= self.batch_count:
                    break
            if len(page) < need:
                break
            after = SyncCursor.of(page[-1])

        # Small store: nothing else to sync, so the deferred ties go again.
        for record in deferred:
            if len(chosen) >= self.batch_count:
                break
            chosen[record.item_key] = record
            last = record

        if last is not None:
            self.cursor = SyncCursor.of(last)
        return list(chosen.values())

    def _behind_boundary(self, record: PriceRecord) -> bool:
        """Same fetched_at as the last boundary and at or before it by key."""
        return (self.cursor is not None
                and record.fetched_at == self.cursor.fetched_at
                and record.item_key <= self.cursor.item_key)

    async def _sync_batch(self, batch: List[str], report: SyncRunReport) -> bool:
        """
        Fetch and write one batch. Returns False when the whole batch failed
        and may be retried. RateLimited and store outages propagate and end
        the run.
        """
        self._set_state(SyncState.FETCHING)
        granted = []
        for key in batch:
            ok, _ = self.cache.acquire_refresh_slot(key)
            if ok:
                granted.append(key)
            elif key not in report.skipped_in_flight:
                report.skipped_in_flight.append(key)
        if not granted:
            return True

        released = set()
        try:
            try:
                result = await self.client.fetch_batch(granted)
            except RateLimited:
                raise
            except UpstreamError as e:
                log.warning(f"Batch of {len(granted)} failed: {e}")
                for key in granted:
                    self.cache.release_refresh_slot(key, error=e)
                    released.add(key)
                return False

            self._set_state(SyncState.WRITING)
            for key in granted:
                record = result.records.get(key)
                if record is None:
                    self.cache.release_refresh_slot(key, error=UpstreamError("no price returned"))
                    released.add(key)
                    continue
                await self.store.upsert(record)
                self.cache.release_refresh_slot(key, record=record, insert=False)
                released.add(key)
                report.refreshed_keys.append(key)
            return True

        except StoreUnavailable as e:
            log.error(f"Store write failed mid-batch: {e}")
            raise
        finally:
            for key in granted:
                if key not in released:
                    self.cache.release_refresh_slot(key, error=UpstreamError("sync batch aborted"))

    # ─────────────────────────────────────────────────────────
    # SCHEDULER CONTROL
    # ─────────────────────────────────────────────────────────

    def start(self, run_immediately: bool = False):
        if self._scheduler is not None and self._scheduler.running:
            log.warning("Scheduler already running — ignoring start call")
            return

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        trigger_kwargs = {}
        if run_immediately:
            trigger_kwargs["next_run_time"] = datetime.now(timezone.utc)
        self._scheduler.add_job(
            self.run_once,
            IntervalTrigger(seconds=self.interval_s),
            id                 = JOB_ID,
            name               = f"Pricing sync — {self.batch_count} most-stale records",
            max_instances      = 1,
            coalesce           = True,
            misfire_grace_time = GRACE_S,
            replace_existing   = True,
            **trigger_kwargs,
        )
        self._scheduler.start()
        log.info(f"Pricing sync scheduled every {self.interval_s / 3600:.1f}h "
                 f"({self.batch_count} records per run)")

    def stop(self):
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            log.info("Pricing sync scheduler stopped")
        self._scheduler = None

    async def shutdown(self):
        """Stop scheduling and let a manual run already in progress finish."""
        self.stop()
        if self._manual is not None and not self._manual.done():
            await asyncio.gather(self._manual, return_exceptions=True)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def status(self) -> dict:
        next_run = None
        if self.running:
            job = self._scheduler.get_job(JOB_ID)
            if job is not None and job.next_run_time:
                next_run = job.next_run_time.isoformat()
        return {
            "running":       self.running,
            "state":         self.state.value,
            "interval_s":    self.interval_s,
            "batch_count":   self.batch_count,
            "next_run":      next_run,
            "retry_pending": len(self._retry_keys),
            "cursor":        asdict(self.cursor) if self.cursor else None,
            "last_run":      self.last_report.to_dict() if self.last_report else None,
        }

    def trigger_now(self) -> dict:
        """Start an out-of-schedule run in the background (admin / testing)."""
        if self._in_run or (self._manual is not None and not self._manual.done()):
            return {"triggered": False, "reason": "sync already in progress"}
        self._manual = asyncio.create_task(self.run_once(), name="price_sync:manual")
        return {"triggered": True, "batch_count": self.batch_count}
