from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, List, Set, Tuple

from botocore.exceptions import ClientError

from shelfscan.integrations.aws import error_code

logger = logging.getLogger(__name__)


class StaleSessionError(RuntimeError):
    """The client session behind a handle no longer exists."""

    def __init__(self, handle: str) -> None:
        super().__init__(f"session {handle} is gone")
        self.handle = handle


class SessionChannel:
    def post(self, handle: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class InMemorySessionChannel(SessionChannel):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.stale: Set[str] = set()
        self._fail_next: Dict[str, Exception] = {}

    def fail_next(self, handle: str, exc: Exception) -> None:
        with self._lock:
            self._fail_next[handle] = exc

    def post(self, handle: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            if handle in self.stale:
                raise StaleSessionError(handle)
            exc = self._fail_next.pop(handle, None)
            if exc is not None:
                raise exc
            self.sent.append((handle, payload))

    def pushes_for(self, handle: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [p for h, p in self.sent if h == handle]


class ApiGatewaySessionChannel(SessionChannel):
    """Pushes to API Gateway websocket connections via the management API."""

    def __init__(self, client) -> None:
        self.client = client

    def post(self, handle: str, payload: Dict[str, Any]) -> None:
        try:
            self.client.post_to_connection(
                ConnectionId=handle,
                Data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            )
        except ClientError as e:
            if error_code(e) in ("GoneException", "410"):
                raise StaleSessionError(handle) from e
            raise
