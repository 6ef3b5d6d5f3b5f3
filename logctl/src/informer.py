from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api

from logctl.src.cache import DeletedFinalStateUnknown, Indexer
from logctl.src.metrics import METRICS


@dataclass(frozen=True)
class ResourceEventHandler:
    """Callbacks invoked by an event source after the cache has been updated."""

    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any, Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None


class EventSource(Protocol):
    """Capabilities the reconciliation engine needs from a watched resource feed."""

    def run(self, stop_event: threading.Event) -> None: ...

    def has_synced(self) -> bool: ...

    def get_by_key(self, key: str) -> tuple[Any | None, bool]: ...

    def add_event_handler(self, handler: ResourceEventHandler) -> None: ...

    def request_stop(self) -> None: ...


class Informer:
    """Lists then watches one resource kind and mirrors it into an :class:`Indexer`.

    The informer streams events with the Kubernetes watch API starting from
    the ``resourceVersion`` of the initial list.  Every event is applied to
    the cache first and then dispatched to the registered handlers, so a
    handler that enqueues a key can rely on the cache holding (or no longer
    holding) the object by the time a worker looks it up.

    A ``410 Gone`` from the watch means etcd compacted past our
    ``resourceVersion``; the informer relists and replaces the cache,
    synthesizing add/update/delete notifications for whatever changed while
    it was disconnected.
    """

    def __init__(
        self,
        list_func: Callable[..., Any],
        *,
        list_kwargs: dict[str, Any] | None = None,
        indexer: Indexer | None = None,
        resync_seconds: int = 0,
        kind: str = "object",
        logger: logging.Logger | None = None,
    ) -> None:
        self.list_func = list_func
        self.list_kwargs = dict(list_kwargs or {})
        self.indexer = indexer or Indexer()
        self.resync_seconds = resync_seconds
        self.kind = kind
        self.logger = logger or logging.getLogger(__name__)

        self._handlers: list[ResourceEventHandler] = []
        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._last_resync = time.monotonic()

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def get_by_key(self, key: str) -> tuple[Any | None, bool]:
        return self.indexer.get_by_key(key)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _dispatch(self, callback_name: str, *args: Any) -> None:
        for handler in self._handlers:
            callback = getattr(handler, callback_name)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception:
                self.logger.exception("Event handler %s failed for %s", callback_name, self.kind)
                METRICS.crashes_total.labels(component="event_handler").inc()

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Apply a single watch event to the cache and notify handlers."""
        if event_type in {"ADDED", "MODIFIED"}:
            _, previous = self.indexer.add(obj)
            if previous is None:
                self._dispatch("on_add", obj)
            else:
                self._dispatch("on_update", previous, obj)
        elif event_type == "DELETED":
            self.indexer.delete(obj)
            self._dispatch("on_delete", obj)
        elif event_type == "BOOKMARK":
            return
        else:
            self.logger.warning(
                "Ignoring unknown watch event type %r for %s", event_type, self.kind
            )
            return
        METRICS.events_total.labels(type=event_type).inc()

    def _replace(self, items: Iterable[Any]) -> None:
        items = list(items)
        previous, removed = self.indexer.replace(items)
        for obj in items:
            key = self.indexer.key_func(obj)
            if key in previous:
                self._dispatch("on_update", previous[key], obj)
            else:
                self._dispatch("on_add", obj)
        for key, obj in removed.items():
            self.logger.info("%s %s disappeared while the watch was disconnected", self.kind, key)
            self._dispatch("on_delete", DeletedFinalStateUnknown(key=key, obj=obj))

    def _list(self) -> str | None:
        """List every object, replace the cache, and return the list's resourceVersion."""
        listing = self.list_func(**self.list_kwargs)
        self._replace(getattr(listing, "items", None) or [])
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _maybe_resync(self, now_monotonic: float) -> None:
        if self.resync_seconds <= 0:
            return
        if now_monotonic - self._last_resync < self.resync_seconds:
            return
        self._last_resync = now_monotonic
        objects = self.indexer.list()
        self.logger.debug("Resyncing %d cached %s object(s)", len(objects), self.kind)
        for obj in objects:
            self._dispatch("on_update", obj, obj)

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the watch timeout, shortened so a due resync is not missed."""
        if self.resync_seconds <= 0:
            return 30
        remaining = self._last_resync + self.resync_seconds - now_monotonic
        return min(30, max(1, math.ceil(remaining)))

    def _list_with_backoff(
        self, stop: threading.Event, phase: str
    ) -> tuple[bool, str | None]:
        """List until it succeeds; ``(False, None)`` if stopped or denied by RBAC.

        Retries use jittered exponential backoff, 1 s doubling to 30 s.
        """
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                return True, self._list()
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during %s of %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        phase,
                        self.kind,
                        exc.status,
                    )
                    return False, None
                self.logger.exception("%s %s failed", self.kind, phase)
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during %s of %s", phase, self.kind)
                METRICS.watch_errors_total.inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return False, None

    def run(self, stop_event: threading.Event) -> None:
        """List-then-watch until *stop_event* is set.

        1. Retries the initial list with jittered exponential backoff (1 s
           doubling to 30 s) so a slow API server does not kill the
           controller.
        2. Marks the informer synced once the listing is in the cache.
        3. Watches from the list's ``resourceVersion``, applying events to
           the cache and handlers.
        4. On ``410 Gone``, relists (retrying with the same backoff until it
           succeeds) and resumes from the new version.
        5. On other errors, backs off with jitter and reconnects.

        ``401`` / ``403`` responses are treated as RBAC misconfiguration and
        end the loop immediately instead of retrying forever.
        """
        stop = stop_event
        self._external_stop.clear()

        listed, resource_version = self._list_with_backoff(stop, phase="initial list")
        if not listed:
            self._synced.clear()
            return
        self._last_resync = time.monotonic()
        self._synced.set()
        self.logger.info(
            "Cache synced with %d %s object(s); watching from resourceVersion %s",
            len(self.indexer),
            self.kind,
            resource_version,
        )

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            self._maybe_resync(now_monotonic=time.monotonic())
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_func,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(time.monotonic()),
                    **self.list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handle_event(str(event.get("type", "")), obj)
                    self._maybe_resync(now_monotonic=time.monotonic())

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing %s", self.kind)
                    # Deletions during the gap only surface through a full list.
                    listed, resource_version = self._list_with_backoff(stop, phase="410 re-list")
                    if not listed:
                        break
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    break

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self._synced.clear()


def deployment_informer(
    apps_api: AppsV1Api,
    namespace: str = "",
    resync_seconds: int = 0,
) -> Informer:
    """Build an informer for Deployments in *namespace*, or cluster-wide when empty."""
    if namespace:
        return Informer(
            apps_api.list_namespaced_deployment,
            list_kwargs={"namespace": namespace},
            resync_seconds=resync_seconds,
            kind="Deployment",
        )
    return Informer(
        apps_api.list_deployment_for_all_namespaces,
        resync_seconds=resync_seconds,
        kind="Deployment",
    )
