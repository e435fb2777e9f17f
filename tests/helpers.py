"""Test doubles and polling helpers shared by the test modules."""

import threading
import time
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import Mock


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_response(body: Any) -> Mock:
    resp = Mock()
    resp.json.return_value = body
    resp.raise_for_status.return_value = None
    return resp


def change_row(seq: Any, entry_id: Optional[str]) -> Dict[str, Any]:
    row: Dict[str, Any] = {"seq": seq, "changes": [{"rev": "1-abc"}]}
    if entry_id is not None:
        row["id"] = entry_id
    return row


class ScriptedSession:
    """
    Stand-in for `requests.Session` serving scripted `_changes` bodies.

    Items may be response bodies or exceptions to raise. Once the script
    runs out, long-polls return empty result sets.
    """

    def __init__(self, bodies: List[Any], head: Any = None):
        self.bodies = list(bodies)
        self.head = head
        self.calls: List[Dict[str, Any]] = []
        self.headers: Dict[str, str] = {}
        self.closed = False
        self._lock = threading.Lock()

    def get(self, url: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None):
        if not url.endswith("/_changes"):
            return make_response({"update_seq": self.head})

        with self._lock:
            self.calls.append(dict(params or {}))
            body = self.bodies.pop(0) if self.bodies else None

        if isinstance(body, Exception):
            raise body
        if body is None:
            time.sleep(0.01)
            return make_response({"results": [], "last_seq": (params or {}).get("since")})
        return make_response(body)

    def close(self) -> None:
        self.closed = True

    @property
    def since_values(self) -> List[Any]:
        with self._lock:
            return [call.get("since") for call in self.calls]
