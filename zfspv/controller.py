"""Shared machinery for controllers that reconcile namespaced objects.

A controller watches objects kept in an :class:`ObjectStore`, turns events
into ``namespace/name`` keys on a :class:`WorkQueue`, and has worker threads
take keys off the queue and bring each object to its desired state.
"""

from __future__ import annotations

import abc
import copy
import logging
import threading
from collections import deque
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)

_MAX_BACKOFF_EXPONENT = 62
_SYNC_POLL_SECONDS = 0.1
_WORKER_RESTART_SECONDS = 1.0


class NotFoundError(LookupError):
    """Raised when an object is not in the store."""


class InvalidKeyError(ValueError):
    """Raised when a key is not of the form ``name`` or ``namespace/name``."""


@dataclass
class ObjectMeta:
    """Identity and lifecycle data shared by all watched objects."""

    name: str
    namespace: str = ""
    deletion_timestamp: datetime | None = None
    finalizers: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class DeletedFinalStateUnknown:
    """A deleted object whose final state was missed; ``obj`` may be stale."""

    key: str
    obj: Any


def _meta(obj: Any) -> ObjectMeta:
    meta = getattr(obj, "metadata", None)
    if not isinstance(meta, ObjectMeta):
        raise TypeError(f"object has no meta: {obj!r}")
    return meta


def meta_namespace_key(obj: Any) -> str:
    """Return the ``namespace/name`` key of an object, or ``name`` if it has no namespace."""
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key
    meta = _meta(obj)
    if meta.namespace:
        return f"{meta.namespace}/{meta.name}"
    return meta.name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a key into ``(namespace, name)``; the namespace is "" when absent."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise InvalidKeyError(f"unexpected key format: {key!r}")


class ObjectStore:
    """A thread-safe cache of objects indexed by namespace and name."""

    def __init__(self, objects: Iterable[Any] = ()) -> None:
        self._lock = threading.Lock()
        self._objects: dict[tuple[str, str], Any] = {}
        for obj in objects:
            self.add(obj)

    def add(self, obj: Any) -> None:
        """Insert or replace an object."""
        meta = _meta(obj)
        with self._lock:
            self._objects[(meta.namespace, meta.name)] = obj

    def delete(self, namespace: str, name: str) -> Any:
        """Remove and return an object; raise NotFoundError if it is absent."""
        with self._lock:
            try:
                return self._objects.pop((namespace, name))
            except KeyError:
                raise NotFoundError(f"{namespace}/{name} not found") from None

    def get(self, namespace: str, name: str) -> Any:
        """Return an object; raise NotFoundError if it is absent."""
        with self._lock:
            try:
                return self._objects[(namespace, name)]
            except KeyError:
                raise NotFoundError(f"{namespace}/{name} not found") from None


class WorkQueue:
    """A de-duplicating work queue with per-item exponential back-off.

    An item added several times before it is taken is handed out once. An
    item added while being processed is handed out again after ``done``.
    """

    def __init__(self, name: str = "", base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self.name = name
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._failures: dict[Hashable, int] = {}
        self._timers: set[threading.Timer] = set()
        self._shutting_down = False

    def add(self, item: Hashable) -> None:
        """Queue an item unless it is already waiting or the queue is shut down."""
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def add_rate_limited(self, item: Hashable) -> None:
        """Queue an item after a delay that doubles with each failure."""
        with self._cond:
            if self._shutting_down:
                return
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
            if exponent > _MAX_BACKOFF_EXPONENT:
                delay = self._max_delay
            else:
                delay = min(self._base_delay * 2**exponent, self._max_delay)
            if delay > 0:
                timer = threading.Timer(delay, lambda: self._fire(timer, item))
                timer.daemon = True
                self._timers.add(timer)
                timer.start()
                return
        self.add(item)

    def _fire(self, timer: threading.Timer, item: Hashable) -> None:
        with self._cond:
            self._timers.discard(timer)
        self.add(item)

    def get(self, timeout: float | None = None) -> tuple[Any, bool]:
        """Block for the next item and return ``(item, shutdown)``.

        ``shutdown`` is True, with item None, once the queue is shut down and
        drained. Raises TimeoutError if ``timeout`` seconds pass first.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout):
                raise TimeoutError("no item became available")
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        """Mark an item as processed, re-queueing it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def forget(self, item: Hashable) -> None:
        """Clear the failure count of an item."""
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        """Return how many times an item was re-queued with back-off."""
        with self._cond:
            return self._failures.get(item, 0)

    def shut_down(self) -> None:
        """Stop accepting items and wake every waiting consumer."""
        with self._cond:
            self._shutting_down = True
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class Controller(abc.ABC):
    """Base class for controllers that reconcile objects from a store."""

    resource_name = "object"

    def __init__(
        self,
        store: ObjectStore,
        queue: WorkQueue | None = None,
        has_synced: Callable[[], bool] | None = None,
    ) -> None:
        self.store = store
        self.queue = queue if queue is not None else WorkQueue(self.resource_name)
        self._has_synced = has_synced if has_synced is not None else (lambda: True)

    def enqueue(self, obj: Any) -> None:
        """Put the key of an object on the work queue."""
        try:
            key = meta_namespace_key(obj)
        except TypeError as err:
            logger.error("%s", err)
            return
        self.queue.add(key)

    def sync_handler(self, key: str) -> None:
        """Look up the object named by ``key`` and reconcile a copy of it."""
        try:
            namespace, name = split_meta_namespace_key(key)
        except InvalidKeyError:
            logger.error("invalid resource key: %s", key)
            return
        try:
            obj = self.store.get(namespace, name)
        except NotFoundError:
            logger.error("%s '%s' has been deleted", self.resource_name, key)
            return
        self.sync_object(copy.deepcopy(obj))

    @abc.abstractmethod
    def sync_object(self, obj: Any) -> None:
        """Bring one object to its desired state; raise to have it retried."""

    def process_next_work_item(self) -> bool:
        """Handle one key from the queue; return False once the queue is shut down."""
        item, shutdown = self.queue.get()
        if shutdown:
            return False
        try:
            if not isinstance(item, str):
                self.queue.forget(item)
                logger.error("expected string in workqueue but got %r", item)
                return True
            try:
                self.sync_handler(item)
            except Exception as err:  # any failure is retried with back-off
                self.queue.add_rate_limited(item)
                logger.error("error syncing '%s': %s, requeuing", item, err)
                return True
            self.queue.forget(item)
            logger.info("Successfully synced '%s'", item)
            return True
        finally:
            self.queue.done(item)

    def run_worker(self) -> None:
        """Process work items until the queue is shut down."""
        while self.process_next_work_item():
            pass

    def _wait_for_cache_sync(self, stop_event: threading.Event) -> bool:
        while not self._has_synced():
            if stop_event.wait(_SYNC_POLL_SECONDS):
                return False
        return True

    def _worker_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.run_worker()
            stop_event.wait(_WORKER_RESTART_SECONDS)

    def _start_workers(self, threadiness: int, stop_event: threading.Event) -> list[threading.Thread]:
        workers = [
            threading.Thread(target=self._worker_loop, args=(stop_event,), daemon=True)
            for _ in range(threadiness)
        ]
        for worker in workers:
            worker.start()
        return workers

    def _prepare(self, threadiness: int, stop_event: threading.Event) -> list[threading.Thread]:
        logger.info("Starting %s controller", self.resource_name)
        logger.info("Waiting for informer caches to sync")
        if not self._wait_for_cache_sync(stop_event):
            raise RuntimeError("failed to wait for caches to sync")
        logger.info("Starting %s workers", self.resource_name)
        workers = self._start_workers(threadiness, stop_event)
        logger.info("Started %s workers", self.resource_name)
        return workers

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Run ``threadiness`` workers until ``stop_event`` is set."""
        workers: list[threading.Thread] = []
        try:
            workers = self._prepare(threadiness, stop_event)
            stop_event.wait()
            logger.info("Shutting down %s workers", self.resource_name)
        finally:
            self.queue.shut_down()
        for worker in workers:
            worker.join()