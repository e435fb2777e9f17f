"""
Watch: the supervisor of the change consumer.

Wires the change feed to the forwarding queue and the checkpoint store,
and owns the lifecycle of the downstream indexers.

Processing is strictly one change at a time: the feed is paused as soon
as a change arrives and resumed once the change is in the queue. The
checkpoint save runs concurrently with the forward by default
(``CheckpointMode.FAST``). A crash between the save and the forward's
completion leaves the checkpoint past a change that never reached the
queue; that change is not redelivered on restart and is left to the
periodic and one-time indexers to pick up. ``CheckpointMode.SAFE`` saves
only after the forward succeeds, before the feed is resumed.
"""

import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..config.settings import CheckpointMode, WatchSettings
from ..connectors.changes.checkpoint_store import CheckpointStore
from ..connectors.changes.feed_source import ChangesFeedSource
from ..connectors.changes.models import (
    ChangeEvent,
    Cursor,
    ErrorEvent,
    ForwardCancelled,
    ShutdownError,
    WatchError,
)
from ..connectors.changes.sequence_tracker import SequenceTracker
from ..forwarding.forwarder import RetryingForwarder
from ..forwarding.queue_store import ForwardingQueue, SQLForwardingQueue
from ..monitoring.error_reporting import ErrorReporter, LoggingErrorReporter
from ..monitoring.metrics import MetricsSink, PrometheusMetricsSink
from ..monitoring.progress import ProgressReporter
from ..utils.logging import get_logger
from .indexers import DownstreamIndexers

logger = get_logger(__name__)

WATCH_STAGE = "watch"


class WatchState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class Watch:
    """
    Long-polled change consumer.

    Thread Safety: start/stop may be called from any thread. Change
    handling runs on the feed's reader thread, forwards on a single
    forwarding thread, and checkpoint saves plus progress reports on a
    small side pool.

    Example:
        >>> watch = Watch(feed, checkpoint_store, queue, indexers)
        >>> watch.start()
        >>> ...
        >>> watch.stop()
    """

    def __init__(
        self,
        feed: ChangesFeedSource,
        checkpoint_store: CheckpointStore,
        queue: ForwardingQueue,
        indexers: DownstreamIndexers,
        settings: Optional[WatchSettings] = None,
        error_reporter: Optional[ErrorReporter] = None,
        metrics: Optional[MetricsSink] = None,
        forwarder: Optional[RetryingForwarder] = None,
        sequence_tracker: Optional[SequenceTracker] = None,
    ):
        self.feed = feed
        self.checkpoint_store = checkpoint_store
        self.queue = queue
        self.indexers = indexers
        self.settings = settings or WatchSettings()
        self.error_reporter = error_reporter or LoggingErrorReporter()
        self.metrics = metrics or PrometheusMetricsSink()
        self.forwarder = forwarder or RetryingForwarder(
            queue,
            self.error_reporter,
            backoff_pow=self.settings.retry_backoff_pow,
            backoff_max_ms=self.settings.retry_backoff_max_ms,
        )
        self.sequence_tracker = sequence_tracker or SequenceTracker(
            feed.fetch_head_cursor,
            interval=self.settings.sequence_refresh_interval,
        )
        self.progress = ProgressReporter(
            self.metrics,
            total_sequence=lambda: self.sequence_tracker.total,
            queue_length=self._queue_length_fn(),
        )

        # State management
        self._state = WatchState.STOPPED
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._shutdown_requested = threading.Event()
        self._terminated = False
        self._forward_pool: Optional[ThreadPoolExecutor] = None
        self._side_pool: Optional[ThreadPoolExecutor] = None
        self.changes_processed: int = 0
        self.changes_skipped: int = 0
        self.last_forwarded_cursor: Optional[Cursor] = None

        # Signal handlers
        self._original_sigterm = None
        self._original_sigint = None

    @classmethod
    def from_settings(cls, settings, indexers: DownstreamIndexers, **kwargs) -> "Watch":
        """Build the watch and its feed, checkpoint store and queue from `Settings`."""
        return cls(
            feed=ChangesFeedSource.from_settings(settings),
            checkpoint_store=CheckpointStore.from_settings(settings),
            queue=SQLForwardingQueue.from_settings(settings),
            indexers=indexers,
            settings=settings.watch,
            **kwargs,
        )

    @property
    def state(self) -> WatchState:
        return self._state

    def start(self) -> None:
        """
        Start the watch (non-blocking).

        Steps:
        1. Persist the "watch" stage marker
        2. Start the head sequence tracker
        3. Start the downstream indexers (fire-and-forget)
        4. Read the checkpoint and start the feed after it

        A watch is single-use: its feed cannot be restarted once stopped,
        so build a new `Watch` (e.g. via `from_settings`) to start again.

        Raises:
            WatchError: If the watch is not stopped, or has been stopped already
            CheckpointError: If the stage marker or the checkpoint cannot be accessed
        """
        with self._state_lock:
            if self._state is not WatchState.STOPPED:
                raise WatchError(f"Cannot start watch in state {self._state.value}")
            if self._terminated:
                raise WatchError("Watch was stopped and cannot be restarted; create a new Watch")
            self._state = WatchState.STARTING

        logger.info("Watch: starting", extra={"checkpoint_mode": self.settings.checkpoint_mode.value})

        started = []
        try:
            self._stop_event.clear()
            self._shutdown_requested.clear()

            self.checkpoint_store.save(stage=WATCH_STAGE)

            self.sequence_tracker.start()

            self._forward_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="watch-forward")
            self._side_pool = ThreadPoolExecutor(
                max_workers=self.settings.side_task_workers,
                thread_name_prefix="watch-side",
            )

            for name, indexer in self.indexers.items():
                try:
                    indexer.run()
                except Exception as e:
                    self.error_reporter.report(e, {"kind": "indexer_start_failed", "component": name})
                else:
                    started.append(name)

            self._launch_change_reader()

        except Exception:
            logger.error("Watch failed to start", extra={"started_indexers": started})
            self._stop_event.set()
            failures: Dict[str, BaseException] = {}
            for name in started:
                stopper = self.indexers.stopper(name)
                if stopper is not None:
                    self._stop_component(name, stopper, failures)
            self._release_resources()
            with self._state_lock:
                self._state = WatchState.STOPPED
            raise

        with self._state_lock:
            # A halting feed may already have stopped the watch
            if self._state is WatchState.STARTING:
                self._state = WatchState.RUNNING

    def stop(self, raise_on_failure: bool = False) -> Dict[str, BaseException]:
        """
        Stop the feed and each downstream indexer.

        Every indexer's ``stop()`` is attempted even if an earlier one
        fails; each failure is reported. Listener removal always runs.
        A forward still retrying is abandoned at its next backoff wait.

        Returns:
            Failures keyed by component name

        Raises:
            ShutdownError: If ``raise_on_failure`` and anything failed to stop
        """
        with self._state_lock:
            if self._state in (WatchState.STOPPED, WatchState.STOPPING):
                return {}
            self._state = WatchState.STOPPING

        logger.info("Stopping Watch...")
        self._terminated = True
        self._stop_event.set()
        self._shutdown_requested.set()

        failures: Dict[str, BaseException] = {}
        try:
            self._stop_component("feed", self.feed.stop, failures)
            for name, _ in self.indexers.items():
                stopper = self.indexers.stopper(name)
                if stopper is not None:
                    self._stop_component(name, stopper, failures)
        finally:
            self.feed.remove_all_listeners()
            self._release_resources()
            with self._state_lock:
                self._state = WatchState.STOPPED

        if failures:
            logger.warning(
                "Stopped Watch with failures",
                extra={"failed_components": sorted(failures)}
            )
            if raise_on_failure:
                raise ShutdownError(failures)
        else:
            logger.info("Stopped Watch gracefully")
        return failures

    def run_forever(self, install_signal_handlers: bool = True) -> None:
        """Start, then block until SIGTERM/SIGINT or `request_shutdown()`."""
        self.start()
        if install_signal_handlers:
            self._setup_signal_handlers()
        try:
            while not self._shutdown_requested.wait(1.0):
                pass
        finally:
            if install_signal_handlers:
                self._restore_signal_handlers()
            self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_requested.set()

    def _launch_change_reader(self) -> None:
        checkpoint = self.checkpoint_store.get()

        logger.info(f"listening from {checkpoint.cursor}...", extra={"since": checkpoint.cursor})

        self.feed.start(
            since=str(checkpoint.cursor),
            on_change=self._on_change,
            on_error=self._on_error,
            batch_size=self.settings.batch_size,
            include_docs=self.settings.include_docs,
        )

    def _on_change(self, change: ChangeEvent) -> None:
        """Runs on the feed's reader thread for every delivered change."""
        if not change.id:
            self.changes_skipped += 1
            return

        self.feed.pause()
        self._submit(self._forward_pool, self._forward_then_resume, change)
        self._submit(self._side_pool, self.progress.report, change.cursor)

        if self.settings.checkpoint_mode is CheckpointMode.FAST:
            self._submit(self._side_pool, self._save_checkpoint, change.cursor)

    def _on_error(self, event: ErrorEvent) -> None:
        self.error_reporter.report(event.error, {"kind": "feed_transport_error", "since": event.since})

        if event.terminal:
            # The reader exits after this event; nothing more will arrive
            logger.error("Change feed halted, stopping Watch", extra={"since": event.since})
            self.stop()

    def _forward_then_resume(self, change: ChangeEvent) -> None:
        try:
            self.forwarder.forward(change, self._stop_event)
        except ForwardCancelled:
            return
        except Exception as e:
            # The change is dropped; the background indexers are the backstop
            self.error_reporter.report(e, {"kind": "forward_crashed", "id": change.id, "cursor": change.cursor})
        else:
            self.changes_processed += 1
            self.last_forwarded_cursor = change.cursor
            if self.settings.checkpoint_mode is CheckpointMode.SAFE:
                self._save_checkpoint(change.cursor)

        if not self._stop_event.is_set():
            self.feed.resume()

    def _save_checkpoint(self, cursor: Cursor) -> None:
        try:
            self.checkpoint_store.save(cursor=cursor)
        except Exception as e:
            self.error_reporter.report(e, {"kind": "checkpoint_save_failed", "cursor": cursor})

    def _submit(self, pool: Optional[ThreadPoolExecutor], fn: Callable[..., Any], *args: Any) -> None:
        if pool is None or self._stop_event.is_set():
            logger.debug(f"Dropping {fn.__name__}, watch is stopping")
            return
        try:
            pool.submit(fn, *args)
        except RuntimeError:
            # Executor was shut down between the check and the submit
            logger.debug(f"Dropping {fn.__name__}, watch is stopping")

    def _stop_component(self, name: str, stop: Callable[[], Any], failures: Dict[str, BaseException]) -> None:
        try:
            stop()
        except Exception as e:
            failures[name] = e
            self.error_reporter.report(e, {"kind": "shutdown_failed", "component": name})

    def _release_resources(self) -> None:
        self.sequence_tracker.stop(timeout=1.0)
        for pool in (self._forward_pool, self._side_pool):
            if pool is not None:
                pool.shutdown(wait=False, cancel_futures=True)
        self._forward_pool = None
        self._side_pool = None

    def _queue_length_fn(self) -> Optional[Callable[[], int]]:
        source = self.indexers.queue_length_source()
        if source is not None:
            return source.fetch_queue_length
        if hasattr(self.queue, "fetch_queue_length"):
            return self.queue.fetch_queue_length
        return None

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received shutdown signal {signum}")
            self.request_shutdown()

        self._original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        self._original_sigint = signal.signal(signal.SIGINT, signal_handler)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
