from __future__ import annotations

import logging
import threading
import time
from typing import Any

from kubernetes.client import AppsV1Api

from logctl.src.cache import meta_namespace_key
from logctl.src.config import ControllerConfig
from logctl.src.informer import EventSource, ResourceEventHandler, deployment_informer
from logctl.src.metrics import METRICS
from logctl.src.reconciler import LogLevelReconciler, UnsupportedLogLevelError
from logctl.src.workqueue import RateLimitingQueue, default_controller_rate_limiter

LOGGER = logging.getLogger(__name__)


def report_error(err: BaseException, component: str = "controller") -> None:
    """Process-wide crash reporter: log the error with its traceback and carry on."""
    LOGGER.error("Observed an unrecoverable error: %s", err, exc_info=err)
    METRICS.crashes_total.labels(component=component).inc()


class LogLevelController:
    """Drains Deployment keys from a rate-limited queue and reconciles them.

    The event source fills the cache and enqueues ``namespace/name`` keys;
    workers pop keys, look the object up in the cache, and hand it to the
    reconciler.  Failures are handled here, never in the reconciler:

    * cache lookup errors are requeued with backoff up to
      ``lookup_retry_limit`` times, then forgotten and reported;
    * update errors are requeued with backoff up to
      ``mutation_retry_limit`` times, then forgotten;
    * an unsupported annotation value is forgotten immediately.

    Every terminal outcome calls ``queue.forget(key)`` so stale backoff
    never carries over into a later, unrelated failure of the same key.
    Both failure classes count against the queue's single per-key counter.
    """

    def __init__(
        self,
        source: EventSource,
        queue: RateLimitingQueue,
        reconciler: LogLevelReconciler,
        *,
        workers: int = 1,
        lookup_retry_limit: int = 5,
        mutation_retry_limit: int = 3,
        worker_restart_seconds: float = 1.0,
        shutdown_timeout_seconds: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.source = source
        self.queue = queue
        self.reconciler = reconciler
        self.workers = workers
        self.lookup_retry_limit = lookup_retry_limit
        self.mutation_retry_limit = mutation_retry_limit
        self.worker_restart_seconds = worker_restart_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.logger = logger or LOGGER
        self.ready = threading.Event()

        source.add_event_handler(
            ResourceEventHandler(
                on_add=self.enqueue,
                on_update=lambda old, new: self.enqueue(new),
                on_delete=self.enqueue,
            )
        )

    def enqueue(self, obj: Any) -> None:
        try:
            key = meta_namespace_key(obj)
        except ValueError as exc:
            report_error(exc, component="event_handler")
            return
        self.queue.add(key)
        METRICS.queue_depth.set(len(self.queue))

    def has_synced(self) -> bool:
        return self.source.has_synced()

    def process_next_item(self) -> bool:
        """Process one key from the queue; return False once the queue is shut down."""
        key, shutting_down = self.queue.get()
        if shutting_down:
            return False

        started = time.monotonic()
        try:
            self._process_key(key)
        finally:
            self.queue.done(key)
            METRICS.queue_depth.set(len(self.queue))
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
        return True

    def _process_key(self, key: Any) -> None:
        try:
            deployment, exists = self.source.get_by_key(key)
        except Exception as exc:
            self._handle_lookup_error(key, exc)
            return

        if not exists:
            # Deleted; the annotation went away with the Deployment.
            self.logger.info("Deployment %s no longer exists; nothing to do", key)
            self.queue.forget(key)
            METRICS.reconcile_total.labels(outcome="deleted").inc()
            return

        self.logger.info("Deployment discovered: %s", key)
        try:
            result = self.reconciler.reconcile(deployment)
        except UnsupportedLogLevelError as exc:
            self.logger.error("Not reconciling Deployment %s: %s", key, exc)
            self.queue.forget(key)
            METRICS.reconcile_total.labels(outcome="unsupported").inc()
            METRICS.forgotten_total.labels(reason="unsupported").inc()
            return
        except Exception as exc:
            self._handle_mutation_error(key, exc)
            return

        self.queue.forget(key)
        outcome = "updated" if result.updated else "skipped"
        METRICS.reconcile_total.labels(outcome=outcome).inc()
        if not result.updated:
            self.logger.info("Skipping Deployment %s: annotation not found", key)

    def _handle_lookup_error(self, key: Any, exc: Exception) -> None:
        if self.queue.num_requeues(key) < self.lookup_retry_limit:
            self.logger.error(
                "Failed processing item with key %s with error %s, retrying", key, exc
            )
            self.queue.add_rate_limited(key)
            METRICS.retries_total.labels(failure="lookup").inc()
            return

        self.logger.error(
            "Failed processing item with key %s with error %s, no more retries", key, exc
        )
        self.queue.forget(key)
        METRICS.reconcile_total.labels(outcome="failed").inc()
        METRICS.forgotten_total.labels(reason="lookup_retries_exhausted").inc()
        report_error(exc)

    def _handle_mutation_error(self, key: Any, exc: Exception) -> None:
        requeues = self.queue.num_requeues(key)
        if requeues < self.mutation_retry_limit:
            self.logger.warning(
                "Failed to update Deployment %s: %s; re-queuing (retry %d of %d)",
                key,
                exc,
                requeues + 1,
                self.mutation_retry_limit,
            )
            self.queue.add_rate_limited(key)
            METRICS.retries_total.labels(failure="mutation").inc()
            return

        self.queue.forget(key)
        self.logger.error(
            "Couldn't add env var to containers after %d retries. Forgetting Deployment %s: %s",
            requeues,
            key,
            exc,
        )
        METRICS.reconcile_total.labels(outcome="failed").inc()
        METRICS.forgotten_total.labels(reason="mutation_retries_exhausted").inc()

    def run_worker(self) -> None:
        """Drain the queue until shutdown, restarting after unexpected crashes."""
        while True:
            try:
                while self.process_next_item():
                    pass
                return
            except Exception:
                self.logger.exception(
                    "Worker iteration crashed; restarting in %.1fs", self.worker_restart_seconds
                )
                METRICS.crashes_total.labels(component="worker").inc()
                time.sleep(self.worker_restart_seconds)

    def _run_source(self, stop_event: threading.Event) -> None:
        try:
            self.source.run(stop_event)
        except Exception as exc:
            report_error(exc, component="event_source")

    def wait_for_cache_sync(
        self, stop_event: threading.Event, source_thread: threading.Thread | None = None
    ) -> bool:
        """Block until the event source has synced; False if stopped or the source died first."""
        while not stop_event.is_set():
            if self.source.has_synced():
                return True
            if source_thread is not None and not source_thread.is_alive():
                return False
            stop_event.wait(timeout=0.1)
        return False

    def run(self, stop_event: threading.Event) -> None:
        """Run the event source and workers until *stop_event* is set.

        1. Starts the event source in a daemon thread.
        2. Waits for the initial listing to reach the cache; readiness is
           only reported after that.
        3. Starts ``workers`` worker threads.
        4. On stop (or if the event source exits on its own), interrupts
           the watch, shuts the queue down, and lets workers drain what is
           left before returning.  In-flight reconciliations finish.
        """
        source_thread = threading.Thread(
            target=self._run_source, args=(stop_event,), name="event-source", daemon=True
        )
        source_thread.start()
        worker_threads: list[threading.Thread] = []

        try:
            if not self.wait_for_cache_sync(stop_event, source_thread):
                if not stop_event.is_set():
                    report_error(RuntimeError("error syncing cache"))
                return

            self.ready.set()
            self.logger.info("Cache synced; starting %d worker(s)", self.workers)
            for index in range(self.workers):
                worker = threading.Thread(
                    target=self.run_worker, name=f"worker-{index}", daemon=True
                )
                worker.start()
                worker_threads.append(worker)

            while not stop_event.wait(timeout=1.0):
                if not source_thread.is_alive():
                    self.logger.error("Event source stopped unexpectedly; shutting down")
                    break
        finally:
            self.ready.clear()
            self.source.request_stop()
            self.queue.shut_down()
            for worker in worker_threads:
                worker.join(timeout=self.shutdown_timeout_seconds)
                if worker.is_alive():
                    self.logger.error(
                        "Worker %s did not finish within %ss",
                        worker.name,
                        self.shutdown_timeout_seconds,
                    )
            source_thread.join(timeout=self.shutdown_timeout_seconds)
            self.logger.info("Controller stopped")


def build_controller(config: ControllerConfig, apps_api: AppsV1Api) -> LogLevelController:
    """Wire a :class:`LogLevelController` for Deployments from *config*."""
    source = deployment_informer(
        apps_api,
        namespace=config.namespace,
        resync_seconds=config.resync_seconds,
    )
    queue = RateLimitingQueue(
        rate_limiter=default_controller_rate_limiter(
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        ),
        name="deployments",
    )
    reconciler = LogLevelReconciler(apps_api=apps_api, profiles=config.profiles)
    return LogLevelController(
        source=source,
        queue=queue,
        reconciler=reconciler,
        workers=config.workers,
        lookup_retry_limit=config.lookup_retry_limit,
        mutation_retry_limit=config.mutation_retry_limit,
    )
