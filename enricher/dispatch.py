"""Dispatch / backpressure controller.

Every mutating unit of work (audit write, activity request/response, log
write) goes through Dispatcher.submit():

  1. Bound    — if ``in_flight >= max_in_flight`` the unit is dropped
  2. Count    — otherwise ``in_flight`` is incremented
  3. Schedule — a task on the running event loop (or run inline when the
                caller has no loop)
  4. Release  — ``in_flight`` is decremented in a finally block

Failures inside a unit are reported to ``on_error(err, record)`` and never
propagate to the caller.  ``in_flight`` is only touched from the event loop
thread, so no lock is needed.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from enricher import metrics

logger = logging.getLogger(__name__)

_FLUSH_POLL_SECONDS = 0.02

ErrorCallback = Callable[[BaseException, object], None]


def report_error(on_error: ErrorCallback | None, err: BaseException, record,
                 component: str = "unknown") -> None:
    """Count, log and hand *err* to the caller's callback.  Never raises."""
    metrics.failures_total.labels(component=component).inc()
    logger.warning("%s: unit of work failed: %s", component, err)
    if on_error is None:
        return
    try:
        on_error(err, record)
    except Exception:
        logger.debug("on_error callback raised", exc_info=True)


class Dispatcher:

    def __init__(self, max_in_flight: int = 100, fire_and_forget: bool = True,
                 on_error: ErrorCallback | None = None):
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        self.max_in_flight = max_in_flight
        self.fire_and_forget = fire_and_forget
        self.on_error = on_error
        self.in_flight = 0
        self.dropped = 0
        # Strong references so scheduled tasks are not garbage collected.
        self._tasks: set[asyncio.Task] = set()

    def submit(self, factory: Callable[[], Awaitable], record=None,
               component: str = "unknown") -> asyncio.Task | None:
        """Schedule ``factory()`` as one unit of work.

        Returns None when the unit was dropped, ran inline, or was scheduled
        fire-and-forget; returns the Task when ``fire_and_forget`` is off so
        the caller can await completion.
        """
        if self.in_flight >= self.max_in_flight:
            self.dropped += 1
            metrics.dropped_total.labels(component=component).inc()
            logger.debug("%s: dropped, %d units in flight", component, self.in_flight)
            return None

        self.in_flight += 1
        metrics.in_flight.inc()
        metrics.units_total.labels(component=component).inc()
        unit = self._run(factory, record, component)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Synchronous caller: no loop to schedule onto, run to completion.
            asyncio.run(unit)
            return None

        task = loop.create_task(unit)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if self.fire_and_forget:
            return None
        return task

    async def _run(self, factory, record, component):
        try:
            await factory()
        except Exception as err:
            report_error(self.on_error, err, record, component)
        finally:
            self.in_flight = max(self.in_flight - 1, 0)
            metrics.in_flight.dec()

    async def flush(self, timeout_ms: int = 5000) -> None:
        """Wait until no unit is in flight or *timeout_ms* elapses.

        Outstanding units are abandoned on timeout, not cancelled.
        """
        deadline = time.monotonic() + timeout_ms / 1000
        while self.in_flight > 0 and time.monotonic() < deadline:
            await asyncio.sleep(_FLUSH_POLL_SECONDS)
