from __future__ import annotations

import json
import os
import threading
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

# Message kinds understood by the worker.
QUEUE_SYNC = "sync"
QUEUE_INGEST = "ingest"


@dataclass
class QueueMessage:
    message_id: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    available_at: str | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _due_iso(available_at: datetime | None) -> str:
    if isinstance(available_at, datetime):
        if available_at.tzinfo is None:
            available_at = available_at.replace(tzinfo=UTC)
        return available_at.astimezone(UTC).isoformat()
    return _utcnow().isoformat()


def _is_due(available_at: str | None) -> bool:
    if not available_at:
        return True
    try:
        dt = datetime.fromisoformat(available_at)
    except ValueError:
        return True
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt <= _utcnow()


class InMemoryQueueBackend:
    """Process-local queue; messages are lost on restart."""

    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        msg = QueueMessage(
            message_id=f"msg_{uuid.uuid4().hex[:12]}",
            queue_name=queue_name,
            payload=dict(payload),
            available_at=_due_iso(available_at),
        )
        with self._lock:
            self._queues.setdefault(queue_name, deque()).append(msg)
        return msg

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        with self._lock:
            queue = self._queues.setdefault(queue_name, deque())
            for _ in range(len(queue)):
                msg = queue.popleft()
                if _is_due(msg.available_at):
                    self._inflight[msg.message_id] = msg
                    return msg
                queue.append(msg)
            return None

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            self._inflight.pop(message_id, None)

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.pop(message_id, None)
            if msg is None:
                return None
            msg.attempt += 1
            if requeue:
                msg.available_at = (_utcnow() + timedelta(milliseconds=max(0, int(delay_ms)))).isoformat()
                self._queues.setdefault(msg.queue_name, deque()).appendleft(msg)
            return msg

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(queue_name, ()))

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for TAXFLOW_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis list per queue plus one JSON document per message; in-flight ids live in a set."""

    backend_name = "redis"

    def __init__(self, *, dsn: str, namespace: str = "taxflow", client: Any = None) -> None:
        if client is None:
            if not dsn.strip():
                raise ValueError("REDIS_DSN must be provided for redis queue backend")
            client = _import_redis().Redis.from_url(dsn.strip(), decode_responses=True)
        self._client = client
        self._namespace = namespace.strip() or "taxflow"
        self._lock = threading.RLock()

    def _pending_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:pending"

    def _inflight_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:inflight"

    def _msg_key(self, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _load(self, message_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _store(self, message_id: str, data: dict[str, Any]) -> None:
        self._client.set(self._msg_key(message_id), json.dumps(data, sort_keys=True, separators=(",", ":")))

    @staticmethod
    def _to_message(message_id: str, data: dict[str, Any]) -> QueueMessage:
        return QueueMessage(
            message_id=message_id,
            queue_name=str(data.get("queue_name", "")),
            payload=data.get("payload") or {},
            attempt=int(data.get("attempt", 0)),
            available_at=data.get("available_at") or None,
        )

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        message_id = f"msg_{uuid.uuid4().hex[:12]}"
        data = {
            "queue_name": queue_name,
            "payload": dict(payload),
            "attempt": 0,
            "state": "pending",
            "available_at": _due_iso(available_at),
        }
        with self._lock:
            self._store(message_id, data)
            self._client.rpush(self._pending_key(queue_name), message_id)
            self._client.sadd(
                self._registry_key(),
                self._pending_key(queue_name),
                self._inflight_key(queue_name),
                self._msg_key(message_id),
            )
        return self._to_message(message_id, data)

    def dequeue(self, *, queue_name: str) -> QueueMessage | None:
        pending_key = self._pending_key(queue_name)
        with self._lock:
            for _ in range(int(self._client.llen(pending_key))):
                message_id = self._client.lpop(pending_key)
                if not isinstance(message_id, str) or not message_id:
                    return None
                data = self._load(message_id)
                if data is None:
                    continue
                if not _is_due(data.get("available_at")):
                    self._client.rpush(pending_key, message_id)
                    continue
                data["state"] = "inflight"
                self._store(message_id, data)
                self._client.sadd(self._inflight_key(queue_name), message_id)
                return self._to_message(message_id, data)
            return None

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            data = self._load(message_id)
            if data is None or data.get("state") != "inflight":
                return
            self._client.srem(self._inflight_key(str(data["queue_name"])), message_id)
            self._forget(message_id)

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            data = self._load(message_id)
            if data is None or data.get("state") != "inflight":
                return None
            queue_name = str(data["queue_name"])
            data["attempt"] = int(data.get("attempt", 0)) + 1
            self._client.srem(self._inflight_key(queue_name), message_id)
            if requeue:
                data["state"] = "pending"
                data["available_at"] = (_utcnow() + timedelta(milliseconds=max(0, int(delay_ms)))).isoformat()
                self._store(message_id, data)
                self._client.lpush(self._pending_key(queue_name), message_id)
            else:
                self._forget(message_id)
            return self._to_message(message_id, data)

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._pending_key(queue_name)))

    def _forget(self, message_id: str) -> None:
        msg_key = self._msg_key(message_id)
        self._client.delete(msg_key)
        self._client.srem(self._registry_key(), msg_key)

    def reset(self) -> None:
        with self._lock:
            keys = self._client.smembers(self._registry_key())
            if keys:
                self._client.delete(*list(keys))
            self._client.delete(self._registry_key())


QueueBackend = InMemoryQueueBackend | RedisQueueBackend


def create_queue_from_env(environ: Mapping[str, str] | None = None) -> QueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("TAXFLOW_QUEUE_BACKEND", "memory").strip().lower() or "memory"
    if backend == "memory":
        return InMemoryQueueBackend()
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when TAXFLOW_QUEUE_BACKEND=redis")
        return RedisQueueBackend(dsn=dsn, namespace=env.get("TAXFLOW_QUEUE_KEY_PREFIX", "taxflow"))
    raise RuntimeError(f"unsupported queue backend: {backend}")
