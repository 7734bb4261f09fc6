"""
In-process queue processor: a fixed-rate background loop that drains the
queue while the downstream worker answers its health check.

Each cycle:
  probe -> (unavailable: skip) -> dequeue / link / retry-or-drop -> delay -> ...
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from core.models import LinkingRequest
from core.queue import RequestQueue
from core.retry import Action, apply_outcome
from pipeline.collaborators import LinkResult, Linker, Notifier
from probers.http_probe import AvailabilityProbe

log = logging.getLogger(__name__)


@dataclass
class CycleReport:
    skipped: bool = False
    processed: int = 0
    completed: int = 0
    requeued: int = 0
    failed: int = 0


class QueueProcessor:
    def __init__(
        self,
        queue: RequestQueue,
        probe: AvailabilityProbe,
        linker: Linker,
        notifier: Notifier,
        interval_s: float = 300.0,
        item_delay_s: float = 2.0,
        max_retries: int = 3,
        shutdown_grace_s: float = 5.0,
    ) -> None:
        self.queue = queue
        self.probe = probe
        self.linker = linker
        self.notifier = notifier
        self.interval_s = interval_s
        self.item_delay_s = item_delay_s
        self.max_retries = max_retries
        self.shutdown_grace_s = shutdown_grace_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            log.warning("queue processor is already running")
            return
        # a fresh event per run; an old run that outlived its grace keeps its own stop flag
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, args=(self._stop,), name="queue-processor", daemon=True)
        self._thread.start()
        log.info("queue processor started, check interval %ss", self.interval_s)

    def stop(self) -> None:
        if not self._thread:
            return
        log.info("shutting down queue processor")
        self._stop.set()
        self._thread.join(timeout=self.shutdown_grace_s)
        if self._thread.is_alive():
            # keep the reference so start() refuses to run a second drainer
            log.warning("queue processor did not finish within %ss", self.shutdown_grace_s)
            return
        self._thread = None

    def _run(self, stop: threading.Event) -> None:
        next_fire = time.monotonic()
        while not stop.is_set():
            try:
                self.run_cycle(stop)
            except Exception:  # noqa: BLE001
                log.exception("error in queue processor cycle")
            next_fire += self.interval_s
            # fixed rate: an overrunning cycle makes the next one start right away
            next_fire = max(next_fire, time.monotonic())
            stop.wait(next_fire - time.monotonic())
        log.info("queue processor stopped")

    def run_cycle(self, stop: Optional[threading.Event] = None) -> CycleReport:
        if stop is None:
            stop = self._stop
        report = CycleReport()
        if not self.probe.is_available():
            report.skipped = True
            depth = self.queue.size()
            if depth:
                log.info("worker not available, skipping cycle with %d pending requests", depth)
            return report

        while not stop.is_set():
            request = self.queue.dequeue()
            if request is None:
                break
            report.processed += 1
            log.info(
                "processing request %s for %s (%d left in queue)",
                request.id,
                request.subject_label,
                self.queue.size(),
            )
            action = self._handle(request)
            if action is Action.COMPLETED:
                report.completed += 1
            elif action is Action.REQUEUED:
                report.requeued += 1
            else:
                report.failed += 1

            if not self.queue.is_empty():
                stop.wait(self.item_delay_s)

        if report.processed:
            log.info(
                "cycle finished: %d processed, %d completed, %d requeued, %d failed",
                report.processed,
                report.completed,
                report.requeued,
                report.failed,
            )
        else:
            log.debug("no requests to process")
        return report

    def _handle(self, request: LinkingRequest) -> Action:
        try:
            result = self.linker.link(request)
        except Exception as exc:  # noqa: BLE001
            log.exception("error processing request %s", request.id)
            result = LinkResult(False, str(exc))

        transition = apply_outcome(request, result.success, self.max_retries)
        if transition.action is Action.REQUEUED:
            self.queue.enqueue(transition.request)
            log.info(
                "request %s failed, re-queued for retry (%d/%d)",
                request.id,
                transition.request.retry_count,
                self.max_retries,
            )
        elif transition.action is Action.FAILED:
            log.warning("request %s failed after max retries, dropping: %s", request.id, result.message)

        try:
            self.notifier.notify(transition.request, transition.action, result.message)
        except Exception:  # noqa: BLE001
            log.exception("notifier failed for request %s", request.id)
        return transition.action
