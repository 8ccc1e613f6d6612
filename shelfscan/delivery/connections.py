from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from shelfscan.delivery.registry import ConnectionRegistry

logger = logging.getLogger(__name__)

_EVENT_ROUTES = {"CONNECT": "$connect", "DISCONNECT": "$disconnect", "MESSAGE": "$default"}


def _response(status: int, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"statusCode": status}
    if body is not None:
        out["body"] = json.dumps(body)
    return out


def _error(status: int, message: str) -> Dict[str, Any]:
    return _response(status, {"type": "error", "message": message})


class ConnectionManager:
    """Handles websocket lifecycle events ($connect, $disconnect, subscribe messages)."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    def handle(self, event: Dict[str, Any]) -> Dict[str, Any]:
        ctx = event.get("requestContext") or {}
        handle = ctx.get("connectionId")
        if not handle:
            return _error(400, "missing connectionId")
        route = ctx.get("routeKey") or _EVENT_ROUTES.get(str(ctx.get("eventType") or ""), "$default")

        try:
            if route == "$connect":
                self.registry.connect(handle)
                return _response(200)
            if route == "$disconnect":
                self.registry.disconnect(handle)
                return _response(200)
            return self._message(handle, event.get("body"))
        except Exception:
            logger.exception("connection handler failed | handle=%s | route=%s", handle, route)
            return _error(500, "connection handler failed")

    def _message(self, handle: str, raw: Any) -> Dict[str, Any]:
        if raw is None or raw == "":
            return _response(200)
        try:
            msg = json.loads(raw) if isinstance(raw, str) else raw
        except ValueError:
            return _error(400, "message body is not valid JSON")
        if not isinstance(msg, dict):
            return _error(400, "message body must be a JSON object")

        if msg.get("action") != "subscribe":
            logger.debug("ignoring message | handle=%s | action=%s", handle, msg.get("action"))
            return _response(200)
        job_id = msg.get("jobId")
        if not isinstance(job_id, str) or not job_id.strip():
            return _error(400, "subscribe requires a jobId")

        self.registry.subscribe(job_id.strip(), handle)
        return _response(
            200,
            {
                "type": "subscribed",
                "jobId": job_id.strip(),
                "message": "Successfully subscribed to job notifications",
            },
        )
