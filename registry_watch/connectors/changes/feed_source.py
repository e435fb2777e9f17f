"""
Long-poll reader for a CouchDB-style `_changes` feed.

Long-poll events arrive at the rate the registry changes, whether or not
the reader is caught up. A reader a few sequences behind receives one
change per upstream update and never closes the gap by itself, so the
reader asks for rows strictly after its cursor and resumes from the last
delivered cursor whenever the connection is re-established.

Flow control is pause/resume: delivery happens on the reader thread and
the next row is held until the consumer resumes, so a paused consumer
sees at most one pending change when it resumes.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from .models import (
    ChangeEvent,
    Cursor,
    ErrorEvent,
    FeedTransportError,
    WatchError,
    to_cursor,
)
from ...config.settings import TransportErrorPolicy
from ...utils.backoff import backoff

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], None]
ErrorHandler = Callable[[ErrorEvent], None]


class ChangesFeedSource:
    """
    Resumable consumer of a registry's `_changes` feed.

    Thread Safety: pause/resume/stop may be called from any thread.
    Handlers are invoked on the reader thread.

    Example:
        >>> feed = ChangesFeedSource("https://replicate.npmjs.com/registry")
        >>> feed.start(since="100", on_change=handle, on_error=report)
        >>> feed.pause(); ...; feed.resume()
        >>> feed.stop()
    """

    def __init__(
        self,
        registry_url: str,
        session: Optional[requests.Session] = None,
        longpoll_timeout_ms: int = 60000,
        request_timeout: float = 90.0,
        error_policy: TransportErrorPolicy = TransportErrorPolicy.RECONNECT,
        reconnect_backoff_pow: float = 2.0,
        reconnect_backoff_max_ms: int = 60000,
        user_agent: str = "registry-watch",
    ):
        self.registry_url = registry_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})
        self.longpoll_timeout_ms = longpoll_timeout_ms
        self.request_timeout = request_timeout
        self.error_policy = TransportErrorPolicy(error_policy)
        self.reconnect_backoff_pow = reconnect_backoff_pow
        self.reconnect_backoff_max_ms = reconnect_backoff_max_ms

        # State management
        self.since: Optional[Cursor] = None
        self.last_cursor: Optional[Cursor] = None
        self.batch_size: int = 1
        self.include_docs: bool = False

        self._on_change: Optional[ChangeHandler] = None
        self._on_error: Optional[ErrorHandler] = None
        self._listeners_lock = threading.Lock()
        self._resumed = threading.Event()
        self._resumed.set()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_settings(cls, settings, session: Optional[requests.Session] = None) -> "ChangesFeedSource":
        """Build from the root `Settings` object."""
        return cls(
            registry_url=settings.registry.url,
            session=session,
            longpoll_timeout_ms=settings.registry.longpoll_timeout_ms,
            request_timeout=settings.registry.request_timeout,
            error_policy=settings.watch.transport_error_policy,
            reconnect_backoff_pow=settings.watch.retry_backoff_pow,
            reconnect_backoff_max_ms=settings.watch.reconnect_backoff_max_ms,
            user_agent=settings.registry.user_agent,
        )

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def start(
        self,
        since: Cursor,
        on_change: ChangeHandler,
        on_error: Optional[ErrorHandler] = None,
        batch_size: int = 1,
        include_docs: bool = False,
    ) -> "ChangesFeedSource":
        """
        Start reading changes strictly after ``since`` (non-blocking).

        Raises:
            ValueError: If batch_size is not positive
            WatchError: If the reader is already running or was stopped
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self._stop_event.is_set():
            raise WatchError("Change feed was stopped and cannot be restarted")
        if self.running:
            raise WatchError("Change feed is already running")

        self.since = to_cursor(since)
        self.batch_size = batch_size
        self.include_docs = include_docs
        with self._listeners_lock:
            self._on_change = on_change
            self._on_error = on_error

        logger.info(
            f"Listening for changes from {self.since}",
            extra={"since": self.since, "batch_size": batch_size, "include_docs": include_docs}
        )

        self._thread = threading.Thread(target=self._read_loop, name="changes-feed", daemon=True)
        self._thread.start()
        return self

    def pause(self) -> None:
        """Hold back further changes until `resume()`."""
        self._resumed.clear()

    def resume(self) -> None:
        """Let the next pending change through."""
        self._resumed.set()

    def stop(self, join_timeout: Optional[float] = 1.0) -> None:
        """
        Terminate the reader and drop all listeners. Safe to call repeatedly.

        Waits up to ``join_timeout`` seconds for the reader thread to exit,
        unless called from the reader thread itself (e.g. from a handler).
        A long-poll already on the wire may outlive the wait; its rows are
        never delivered.
        """
        if self._stop_event.is_set():
            return
        logger.info("Stopping change feed", extra={"last_cursor": self.last_cursor})
        self._stop_event.set()
        # Wake a paused reader so it can observe the stop
        self._resumed.set()
        self.remove_all_listeners()
        self.session.close()

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(join_timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the reader thread to exit."""
        if self._thread is not None:
            self._thread.join(timeout)

    def remove_all_listeners(self) -> None:
        with self._listeners_lock:
            self._on_change = None
            self._on_error = None

    def fetch_head_cursor(self) -> Cursor:
        """
        Current head of the feed (`update_seq` of the registry database).

        Raises:
            FeedTransportError: If the registry cannot be queried
        """
        body = self._get_json(self.registry_url + "/", params=None, timeout=self.request_timeout)
        if "update_seq" not in body:
            raise FeedTransportError("Registry info has no update_seq")
        return to_cursor(body["update_seq"])

    def poll(self, since: Cursor) -> Tuple[List[Dict[str, Any]], Optional[Cursor]]:
        """
        One long-poll request for rows after ``since``.

        Returns:
            (result rows, last_seq or None)

        Raises:
            FeedTransportError: On HTTP failure or an unusable body
        """
        params = {
            "feed": "longpoll",
            "since": since,
            "limit": self.batch_size,
            "include_docs": "true" if self.include_docs else "false",
            "timeout": self.longpoll_timeout_ms,
        }
        body = self._get_json(self.registry_url + "/_changes", params=params, timeout=self.request_timeout)

        results = body.get("results")
        if not isinstance(results, list):
            raise FeedTransportError("Change feed response has no results list")

        last_seq = body.get("last_seq")
        return results, (to_cursor(last_seq) if last_seq is not None else None)

    def _get_json(self, url: str, params: Optional[Dict[str, Any]], timeout: float) -> Dict[str, Any]:
        try:
            resp = self.session.get(url, params=params, timeout=timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as e:
            raise FeedTransportError(f"Request to {url} failed: {e}") from e
        except ValueError as e:
            raise FeedTransportError(f"Invalid JSON from {url}: {e}") from e

        if not isinstance(body, dict):
            raise FeedTransportError(f"Unexpected response body from {url}")
        return body

    def _read_loop(self) -> None:
        since = self.since
        attempt = 0

        while not self._stop_event.is_set():
            if not self._wait_until_resumed():
                break

            try:
                rows, last_seq = self.poll(since)
            except FeedTransportError as e:
                halting = self.error_policy is TransportErrorPolicy.HALT
                if halting:
                    logger.error(
                        "Change feed halted after transport error",
                        extra={"since": since, "error": str(e)}
                    )
                self._emit_error(ErrorEvent(error=e, since=since, terminal=halting))
                if halting:
                    break

                if not backoff(attempt, self.reconnect_backoff_pow, self.reconnect_backoff_max_ms, self._stop_event):
                    break
                attempt += 1
                continue

            # Reset attempt on successful poll
            attempt = 0

            for row in rows:
                if not self._wait_until_resumed():
                    return

                try:
                    event = ChangeEvent.from_row(row)
                except (ValueError, TypeError, AttributeError) as e:
                    logger.warning(
                        f"Skipping malformed change row: {e}",
                        extra={"since": since}
                    )
                    continue

                self.last_cursor = event.cursor
                self._deliver(event)

            if last_seq is not None:
                since = last_seq
            elif self.last_cursor is not None:
                since = self.last_cursor

        logger.info("Change feed reader exited", extra={"last_cursor": self.last_cursor})

    def _wait_until_resumed(self) -> bool:
        """Block while paused; False once stop was requested."""
        self._resumed.wait()
        return not self._stop_event.is_set()

    def _deliver(self, event: ChangeEvent) -> None:
        with self._listeners_lock:
            handler = self._on_change
        if handler is None:
            return
        try:
            handler(event)
        except Exception as e:
            logger.exception(
                f"Change handler failed for {event.id}",
                extra={"cursor": event.cursor}
            )
            self._emit_error(ErrorEvent(error=e, since=event.cursor))

    def _emit_error(self, event: ErrorEvent) -> None:
        with self._listeners_lock:
            handler = self._on_error
        logger.warning(
            f"Change feed error: {event.error}",
            extra={"since": event.since, "error_type": type(event.error).__name__}
        )
        if handler is not None:
            handler(event)
