"""
runner.py – Off-thread detection passes.

The image-processing capability (OpenCV and the pass function) is an
explicit object handed to the runner. It is initialised at most once and
the runner awaits it before the first pass.

A pass works on an immutable SessionSnapshot inside an executor. Only one
pass runs per runner; a result is applied only when its request is newer
than the last applied one, so a cancelled or superseded pass is discarded.
"""

import asyncio
import logging
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Callable, Optional

log = logging.getLogger("photoscale.runner")


class Capability:
    """
    Lazily initialised dependency; loader() runs once on a worker thread.

    A worker thread created here is shut down by close(), also usable as a
    context manager. An executor passed in stays owned by the caller.
    """

    def __init__(self, loader: Callable[[], object], executor: Optional[Executor] = None):
        self._loader = loader
        self._executor = executor
        self._owns_executor = False
        self._future: Optional[Future] = None
        self._lock = threading.Lock()

    def start(self) -> Future:
        with self._lock:
            if self._future is None:
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capability")
                    self._owns_executor = True
                log.debug("Initialising capability via %s", getattr(self._loader, "__name__", self._loader))
                self._future = self._executor.submit(self._loader)
            return self._future

    @property
    def ready(self) -> bool:
        return self._future is not None and self._future.done() and self._future.exception() is None

    def get(self, timeout: Optional[float] = None):
        """Block until loaded. Re-raises the loader's exception."""
        return self.start().result(timeout)

    def close(self) -> None:
        with self._lock:
            if self._owns_executor and self._executor is not None:
                log.debug("Shutting down capability worker")
                self._executor.shutdown(wait=True)
                self._executor = None
                self._owns_executor = False

    def __enter__(self) -> "Capability":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class DetectionRunner:
    def __init__(self, session, capability: Capability, executor: Optional[Executor] = None):
        self.session = session
        self.capability = capability
        self._executor = executor
        self._busy = False
        self._last_applied = 0.0

    @property
    def busy(self) -> bool:
        return self._busy

    async def run(self, image):
        """
        Run one pass on image and apply it to the session.

        Returns the pass result, or None when it was superseded.

        Raises:
            RuntimeError if a pass is already in flight
            MeasurementError subclasses from the pass itself
        """
        if self._busy:
            raise RuntimeError("A detection pass is already running.")
        self._busy = True
        try:
            pass_fn = await asyncio.wrap_future(self.capability.start())
            snapshot = self.session.snapshot()
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(self._executor, pass_fn, image, snapshot)
        finally:
            self._busy = False
        return self.deliver(result, snapshot.taken_at)

    def deliver(self, result, requested_at: float):
        """Apply result if its request is the newest seen so far."""
        if requested_at <= self._last_applied:
            log.info("Discarding stale pass result (requested %.3f, last applied %.3f)",
                     requested_at, self._last_applied)
            return None
        self._last_applied = requested_at
        self.session.apply_result(result)
        return result

    def cancel(self) -> None:
        """Any pass requested before now is discarded when it finishes."""
        self._last_applied = time.monotonic()
