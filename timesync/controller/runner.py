"""
Controller runner: event delivery for the TimeSyncPolicy reconciler.

- watches TimeSyncPolicy objects and enqueues their names;
- watches Namespaces and enqueues the policies whose selector matches the changed
  namespace (`map_namespace_to_policies`), skipping updates whose resourceVersion did
  not change;
- worker threads drain a de-duplicating work queue and call `reconcile`.

Retry policy lives here, not in the reconciler: a raised error re-queues the name with
capped exponential backoff; `ReconcileResult.requeue` re-queues after the base delay.
"""

from __future__ import annotations

import heapq
import logging
import random
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Set, Tuple

from timesync.config import OperatorConfig, load_operator_config
from timesync.controller.reconciler import TimeSyncPolicyReconciler
from timesync.core.errors import ClusterError
from timesync.providers.k8s_provider import WatchEvent

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    De-duplicating work queue with delayed adds.

    A name is never handed to two workers at once: adding a name that is being
    processed marks it dirty, and it is re-queued when the worker calls `done`.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._ready: Deque[str] = deque()
        self._queued: Set[str] = set()
        self._processing: Set[str] = set()
        self._dirty: Set[str] = set()
        self._delayed: List[Tuple[float, str]] = []
        self._shutdown = False

    def add(self, name: str, delay: float = 0.0) -> None:
        with self._cond:
            if self._shutdown:
                return
            if delay > 0:
                heapq.heappush(self._delayed, (self._clock() + delay, name))
                self._cond.notify()
                return
            self._add_locked(name)

    def _add_locked(self, name: str) -> None:
        if name in self._processing:
            self._dirty.add(name)
            return
        if name in self._queued:
            return
        self._queued.add(name)
        self._ready.append(name)
        self._cond.notify()

    def _promote_due_locked(self) -> Optional[float]:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, name = heapq.heappop(self._delayed)
            self._add_locked(name)
        if self._delayed:
            return max(0.0, self._delayed[0][0] - now)
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next name to process, or None on shutdown/timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                next_due = self._promote_due_locked()
                if self._ready:
                    name = self._ready.popleft()
                    self._queued.discard(name)
                    self._processing.add(name)
                    return name
                wait: Optional[float] = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(timeout=wait)

    def done(self, name: str) -> None:
        with self._cond:
            self._processing.discard(name)
            if name in self._dirty:
                self._dirty.discard(name)
                self._add_locked(name)

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)


class ControllerRunner:
    def __init__(
        self,
        client: Any,
        *,
        reconciler: Optional[TimeSyncPolicyReconciler] = None,
        config: Optional[OperatorConfig] = None,
        queue: Optional[WorkQueue] = None,
    ) -> None:
        self.client = client
        self.reconciler = reconciler or TimeSyncPolicyReconciler(client)
        self.config = config or load_operator_config()
        self.queue = queue or WorkQueue()
        self._failures: Dict[str, int] = {}
        self._namespace_versions: Dict[str, Optional[str]] = {}
        self._threads: List[threading.Thread] = []

    # ---- event handlers ----

    def handle_policy_event(self, event: WatchEvent) -> None:
        name = event.obj.metadata.name
        if name:
            self.queue.add(name)

    def handle_namespace_event(self, event: WatchEvent) -> None:
        ns = event.obj
        if event.type == "MODIFIED" and self._namespace_versions.get(ns.name) == event.resource_version:
            return
        if event.type == "DELETED":
            self._namespace_versions.pop(ns.name, None)
        else:
            self._namespace_versions[ns.name] = event.resource_version
        for policy_name in self.reconciler.map_namespace_to_policies(ns):
            self.queue.add(policy_name)

    # ---- workers ----

    def backoff_seconds(self, failures: int) -> float:
        base = self.config.requeue_base_seconds
        return float(min(base * (2 ** max(0, failures - 1)), self.config.requeue_max_seconds))

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Reconcile one queued name. Returns False when the queue is shut down or timed out."""
        name = self.queue.get(timeout=timeout)
        if name is None:
            return False
        try:
            result = self.reconciler.reconcile(name)
        except Exception as e:
            failures = self._failures.get(name, 0) + 1
            self._failures[name] = failures
            delay = self.backoff_seconds(failures)
            logger.warning("Reconcile of %s failed (attempt %d); requeue in %.0fs: %s", name, failures, delay, e)
            self.queue.add(name, delay=delay)
        else:
            self._failures.pop(name, None)
            if result.requeue:
                self.queue.add(name, delay=float(self.config.requeue_base_seconds))
        finally:
            self.queue.done(name)
        return True

    def _worker_loop(self, stop: threading.Event) -> None:
        while not stop.is_set():
            self.process_next(timeout=1.0)

    # ---- watches ----

    def _watch_loop(
        self,
        kind: str,
        stream: Callable[..., Iterator[WatchEvent]],
        handler: Callable[[WatchEvent], None],
        stop: threading.Event,
    ) -> None:
        resource_version: Optional[str] = None
        backoff_seconds = 1
        while not stop.is_set():
            try:
                for event in stream(resource_version=resource_version, timeout_seconds=self.config.watch_timeout_seconds):
                    if stop.is_set():
                        break
                    if event.resource_version:
                        resource_version = event.resource_version
                    if event.obj is not None:
                        handler(event)
                backoff_seconds = 1
            except ClusterError as e:
                if e.status == 410:
                    # Compacted past our resourceVersion: restart from current state.
                    logger.warning("%s watch resource version expired, re-listing", kind)
                    resource_version = None
                    continue
                logger.error("%s watch error: %s", kind, e)
            except Exception:
                logger.exception("Unexpected %s watch error", kind)
            else:
                continue
            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)

    def start(self, stop: threading.Event) -> None:
        watches = [
            ("TimeSyncPolicy", self.client.watch_policies, self.handle_policy_event),
            ("Namespace", self.client.watch_namespaces, self.handle_namespace_event),
        ]
        for kind, stream, handler in watches:
            t = threading.Thread(
                target=self._watch_loop, args=(kind, stream, handler, stop), name=f"watch-{kind}", daemon=True
            )
            self._threads.append(t)
        for i in range(self.config.workers):
            t = threading.Thread(target=self._worker_loop, args=(stop,), name=f"reconcile-{i}", daemon=True)
            self._threads.append(t)
        for t in self._threads:
            t.start()
        logger.info("Controller started (workers=%d)", self.config.workers)

    def run(self, stop: Optional[threading.Event] = None) -> None:
        stop = stop or threading.Event()
        self.start(stop)
        try:
            while not stop.wait(timeout=1.0):
                pass
        except KeyboardInterrupt:
            stop.set()
        finally:
            self.queue.shutdown()
            for t in self._threads:
                # Watch threads may block until their server-side timeout; they are daemons.
                t.join(timeout=2.0)
            logger.info("Controller stopped")


def run_controller_forever() -> None:
    from timesync.providers.k8s_provider import get_cluster_client

    ControllerRunner(get_cluster_client()).run()
