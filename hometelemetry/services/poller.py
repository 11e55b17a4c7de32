# hometelemetry/services/poller.py

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from hometelemetry.models.series import format_ts
from hometelemetry.services.pipelines import CycleReport, CycleState, ProviderPipeline

logger = logging.getLogger("telemetry.poller")

DEGRADED_AFTER = 2
OFFLINE_AFTER = 5
RESPONSE_SAMPLES = 10


class UnknownProvider(KeyError):
    pass


def _new_status(interval_seconds: int) -> Dict[str, Any]:
    return {
        "last_success": None,
        "last_attempt": None,
        "consecutive_failures": 0,
        "total_failures": 0,
        "total_successes": 0,
        "skipped_ticks": 0,
        "avg_response_time": 0.0,
        "response_times": [],  # last 10 cycle durations
        "health": "unknown",  # healthy, degraded, offline
        "last_state": CycleState.IDLE.value,
        "last_error": None,
        "interval_seconds": interval_seconds,
    }


class PollScheduler:
    """
    Runs every registered provider pipeline on its own interval.

    Each provider has one run lock. A timer tick that finds the lock held is
    skipped; an on-demand trigger waits for the running cycle and then runs.
    A failing provider only ever touches its own status entry.
    """

    def __init__(self, timezone_name: str = "UTC") -> None:
        self._scheduler = AsyncIOScheduler(timezone=timezone_name)
        self._pipelines: Dict[str, ProviderPipeline] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.status: Dict[str, Dict[str, Any]] = {}
        self.latest: Dict[str, Optional[CycleReport]] = {}

    def register(self, pipeline: ProviderPipeline, interval_seconds: int) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        name = pipeline.name
        self._pipelines[name] = pipeline
        self._locks[name] = asyncio.Lock()
        self.status[name] = _new_status(interval_seconds)
        self.latest[name] = None
        logger.info(f"Registered provider {name} every {interval_seconds}s")

    @property
    def providers(self) -> List[str]:
        return list(self._pipelines)

    def pipeline(self, name: str) -> ProviderPipeline:
        try:
            return self._pipelines[name]
        except KeyError:
            raise UnknownProvider(name) from None

    def lock_for(self, name: str) -> asyncio.Lock:
        self.pipeline(name)
        return self._locks[name]

    def is_running(self, name: str) -> bool:
        return self.lock_for(name).locked()

    async def run_cycle(self, name: str) -> Optional[CycleReport]:
        """Run one cycle. Returns None when skipped because a run is in flight."""
        pipeline = self.pipeline(name)
        lock = self._locks[name]
        if lock.locked():
            self.status[name]["skipped_ticks"] += 1
            logger.info(f"[{name}] previous run still in progress, tick skipped")
            return None

        async with lock:
            return await self._run(name, pipeline)

    async def trigger(self, name: str) -> CycleReport:
        """On-demand cycle. Waits for a run in flight and leaves the interval job untouched."""
        pipeline = self.pipeline(name)
        logger.info(f"Force polling {name}")
        async with self._locks[name]:
            return await self._run(name, pipeline)

    async def _run(self, name: str, pipeline: ProviderPipeline) -> CycleReport:
        start_time = datetime.now(timezone.utc)
        self.status[name]["last_attempt"] = start_time.isoformat()
        try:
            report = await pipeline.run()
        except Exception as e:
            # run() reports its own failures; this only guards the scheduler
            logger.exception(f"[{name}] unexpected error in cycle")
            report = CycleReport(
                provider=name,
                started_at=format_ts(start_time),
                state=pipeline.state,
                error=str(e) or e.__class__.__name__,
            )
        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        self._record(name, report, duration)
        return report

    def _record(self, name: str, report: CycleReport, duration: float) -> None:
        status = self.status[name]
        self.latest[name] = report
        status["last_state"] = report.state.value

        times = status["response_times"]
        times.append(duration)
        if len(times) > RESPONSE_SAMPLES:
            times.pop(0)
        status["avg_response_time"] = sum(times) / len(times)

        if report.ok:
            status["last_success"] = report.finished_at
            status["last_error"] = None
            status["consecutive_failures"] = 0
            status["total_successes"] += 1
            status["health"] = "healthy"
            return

        status["last_error"] = report.error
        status["consecutive_failures"] += 1
        status["total_failures"] += 1
        if status["consecutive_failures"] >= OFFLINE_AFTER:
            status["health"] = "offline"
        elif status["consecutive_failures"] >= DEGRADED_AFTER:
            status["health"] = "degraded"
        else:
            status["health"] = "healthy"  # temporary failure
        logger.warning(
            f"[{name}] poll failed during {report.state.value}: {(report.error or '')[:100]} "
            f"(consecutive: {status['consecutive_failures']}, health: {status['health']})"
        )

    # ------------------------------------------------------------------
    # APScheduler wiring
    # ------------------------------------------------------------------
    def start(self) -> None:
        now = datetime.now(timezone.utc)
        for name in self._pipelines:
            interval = self.status[name]["interval_seconds"]
            self._scheduler.add_job(
                self.run_cycle,
                trigger="date",
                run_date=now,
                args=[name],
                id=f"initial_poll_{name}",
                name=f"Initial {name} poll",
            )
            self._scheduler.add_job(
                self.run_cycle,
                trigger=IntervalTrigger(seconds=int(interval)),
                args=[name],
                id=f"poll_{name}",
                name=f"Regular {name} poll",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=30,
            )

        self._scheduler.add_job(
            self.log_health_status,
            trigger=IntervalTrigger(minutes=5),
            id="log_health_status",
            name="Health Status Logging",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Scheduler started for providers: {', '.join(self._pipelines) or 'none'}")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    async def log_health_status(self) -> None:
        for name, status in self.status.items():
            logger.info(
                f"[Health] {name}: "
                f"Health: {status.get('health', 'unknown')} | "
                f"Successes: {status.get('total_successes', 0)} | "
                f"Failures: {status.get('total_failures', 0)} | "
                f"Consecutive: {status.get('consecutive_failures', 0)} | "
                f"Skipped ticks: {status.get('skipped_ticks', 0)} | "
                f"Response time: {status.get('avg_response_time', 0):.2f}s"
            )

    def get_status(self, name: str) -> Dict[str, Any]:
        pipeline = self.pipeline(name)
        status = self.status[name]
        total = status["total_successes"] + status["total_failures"]
        uptime_pct = (status["total_successes"] / total * 100) if total > 0 else 0

        job = self._scheduler.get_job(f"poll_{name}") if self._scheduler.running else None
        next_run = job.next_run_time.isoformat() if job and job.next_run_time else None
        latest = self.latest.get(name)

        return {
            "provider": name,
            "running": self._locks[name].locked(),
            "state": pipeline.state.value,
            "last_report": latest.model_dump(mode="json") if latest else None,
            "last_mirror_ok": pipeline.last_mirror_ok,
            "status": {
                "health": status["health"],
                "last_success": status["last_success"],
                "last_attempt": status["last_attempt"],
                "last_error": status["last_error"],
                "last_state": status["last_state"],
                "consecutive_failures": status["consecutive_failures"],
                "total_successes": status["total_successes"],
                "total_failures": status["total_failures"],
                "skipped_ticks": status["skipped_ticks"],
                "uptime_percentage": round(uptime_pct, 1),
                "avg_response_time": status["avg_response_time"],
            },
            "config": {
                "poll_interval_seconds": status["interval_seconds"],
                "next_run_time": next_run,
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def get_all_status(self) -> Dict[str, Any]:
        return {name: self.get_status(name) for name in self._pipelines}
