"""
Connection registry: which client session is waiting for which job.

Entries move connected -> subscribed -> deleted (on delivery), and every
entry expires after a TTL. A connected-but-unsubscribed session is stored
under a temporary key until the client names its jobId.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

from shelfscan.core.models import CONN_CONNECTED, CONN_SUBSCRIBED, ConnectionRecord, utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_TTL_S = 3600


def temp_key(handle: str) -> str:
    return f"temp-{handle}"


class ConnectionRegistry:
    def __init__(self, *, ttl_s: int = DEFAULT_TTL_S, clock: Callable[[], float] = time.time) -> None:
        self.ttl_s = int(ttl_s)
        self._clock = clock

    def _expiry(self) -> int:
        return int(self._clock()) + self.ttl_s

    def put(self, record: ConnectionRecord) -> None:
        raise NotImplementedError

    def get(self, key: str) -> Optional[ConnectionRecord]:
        raise NotImplementedError

    def claim(self, key: str) -> Optional[ConnectionRecord]:
        """Atomically read and delete the entry; at most one caller gets it."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def connect(self, handle: str) -> ConnectionRecord:
        rec = ConnectionRecord(job_id=temp_key(handle), session_handle=handle, status=CONN_CONNECTED, expires_at=self._expiry())
        self.put(rec)
        logger.info("session connected | handle=%s", handle)
        return rec

    def subscribe(self, job_id: str, handle: str) -> ConnectionRecord:
        rec = ConnectionRecord(job_id=job_id, session_handle=handle, status=CONN_SUBSCRIBED, expires_at=self._expiry())
        self.put(rec)
        self.delete(temp_key(handle))
        logger.info("session subscribed | job=%s | handle=%s", job_id, handle)
        return rec

    def disconnect(self, handle: str) -> None:
        self.delete(temp_key(handle))
        logger.info("session disconnected | handle=%s", handle)


class InMemoryConnectionRegistry(ConnectionRegistry):
    def __init__(self, *, ttl_s: int = DEFAULT_TTL_S, clock: Callable[[], float] = time.time) -> None:
        super().__init__(ttl_s=ttl_s, clock=clock)
        self._lock = threading.Lock()
        self._records: Dict[str, ConnectionRecord] = {}

    def _purge(self) -> None:
        now = self._clock()
        for key in [k for k, r in self._records.items() if r.is_expired(now)]:
            del self._records[key]

    def put(self, record: ConnectionRecord) -> None:
        with self._lock:
            self._records[record.job_id] = record

    def get(self, key: str) -> Optional[ConnectionRecord]:
        with self._lock:
            self._purge()
            return self._records.get(key)

    def claim(self, key: str) -> Optional[ConnectionRecord]:
        with self._lock:
            self._purge()
            return self._records.pop(key, None)

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def disconnect(self, handle: str) -> None:
        with self._lock:
            for key in [k for k, r in self._records.items() if r.session_handle == handle]:
                del self._records[key]
        logger.info("session disconnected | handle=%s", handle)

    def __len__(self) -> int:
        with self._lock:
            self._purge()
            return len(self._records)


class DynamoConnectionRegistry(ConnectionRegistry):
    """
    Table keyed by `jobId` (string) with a numeric `ttl` attribute used for
    DynamoDB TTL. TTL deletion is lazy, so expired items are filtered on read.
    """

    def __init__(self, client, table_name: str, *, ttl_s: int = DEFAULT_TTL_S, clock: Callable[[], float] = time.time) -> None:
        super().__init__(ttl_s=ttl_s, clock=clock)
        self.client = client
        self.table_name = table_name

    @staticmethod
    def _to_item(record: ConnectionRecord) -> dict:
        return {
            "jobId": {"S": record.job_id},
            "connectionId": {"S": record.session_handle},
            "status": {"S": record.status},
            "ttl": {"N": str(int(record.expires_at))},
            "timestamp": {"S": utc_now_iso()},
        }

    @staticmethod
    def _from_item(item: Optional[dict]) -> Optional[ConnectionRecord]:
        if not item:
            return None
        return ConnectionRecord(
            job_id=item["jobId"]["S"],
            session_handle=item["connectionId"]["S"],
            status=(item.get("status") or {}).get("S") or CONN_SUBSCRIBED,
            expires_at=int((item.get("ttl") or {}).get("N") or 0),
        )

    def put(self, record: ConnectionRecord) -> None:
        self.client.put_item(TableName=self.table_name, Item=self._to_item(record))

    def get(self, key: str) -> Optional[ConnectionRecord]:
        resp = self.client.get_item(TableName=self.table_name, Key={"jobId": {"S": key}}, ConsistentRead=True)
        rec = self._from_item(resp.get("Item"))
        if rec is not None and rec.is_expired(self._clock()):
            self.delete(key)
            return None
        return rec

    def claim(self, key: str) -> Optional[ConnectionRecord]:
        resp = self.client.delete_item(TableName=self.table_name, Key={"jobId": {"S": key}}, ReturnValues="ALL_OLD")
        rec = self._from_item(resp.get("Attributes"))
        if rec is not None and rec.is_expired(self._clock()):
            logger.debug("claimed expired entry | key=%s", key)
            return None
        return rec

    def delete(self, key: str) -> None:
        self.client.delete_item(TableName=self.table_name, Key={"jobId": {"S": key}})
