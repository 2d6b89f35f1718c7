"""
Registries of transcoder processes started by this service.

The supervisor receives a registry at construction time. The in-memory
registry lives as long as one service instance; the Redis registry keeps
handles in ``transcode:{stream_id}`` hashes so a restarted or sibling
instance can find processes that are still running.
"""

import json
import time
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


@dataclass
class ExternalProcessHandle:
    pid: int
    stream_id: str
    channel_id: str
    command: List[str]
    started_at: float = field(default_factory=time.time)
    status: str = "running"
    log_path: Optional[str] = None
    output_path: Optional[str] = None
    owner: Optional[str] = None

    def to_mapping(self) -> Dict[str, str]:
        data = asdict(self)
        data["command"] = json.dumps(self.command)
        return {k: "" if v is None else str(v) for k, v in data.items()}

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "ExternalProcessHandle":
        return cls(
            pid=int(data["pid"]),
            stream_id=data["stream_id"],
            channel_id=data.get("channel_id", ""),
            command=json.loads(data.get("command") or "[]"),
            started_at=float(data.get("started_at") or 0),
            status=data.get("status") or "running",
            log_path=data.get("log_path") or None,
            output_path=data.get("output_path") or None,
            owner=data.get("owner") or None,
        )


class InMemoryProcessRegistry:
    """Handles known to this instance only."""

    name = "memory"

    def __init__(self):
        self._handles: Dict[str, ExternalProcessHandle] = {}

    async def register(self, handle: ExternalProcessHandle) -> None:
        self._handles[handle.stream_id] = handle

    async def get(self, stream_id: str) -> Optional[ExternalProcessHandle]:
        return self._handles.get(stream_id)

    async def deregister(self, stream_id: str) -> Optional[ExternalProcessHandle]:
        return self._handles.pop(stream_id, None)

    async def list(self) -> List[ExternalProcessHandle]:
        return list(self._handles.values())

    async def close(self) -> None:
        self._handles.clear()


class RedisProcessRegistry:
    """Durable registry shared between instances through Redis."""

    name = "redis"
    KEY_PREFIX = "transcode:"

    def __init__(self, redis_url: str, worker_id: str, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.worker_id = worker_id
        self.redis_client: Optional[redis.Redis] = client

    async def connect(self):
        if self.redis_client is None:
            self.redis_client = redis.from_url(self.redis_url, decode_responses=True)
        await self.redis_client.ping()
        logger.info(f"Redis process registry connected for worker {self.worker_id}")

    def _key(self, stream_id: str) -> str:
        return f"{self.KEY_PREFIX}{stream_id}"

    async def register(self, handle: ExternalProcessHandle) -> None:
        handle.owner = handle.owner or self.worker_id
        await self.redis_client.hset(self._key(handle.stream_id), mapping=handle.to_mapping())

    async def get(self, stream_id: str) -> Optional[ExternalProcessHandle]:
        data = await self.redis_client.hgetall(self._key(stream_id))
        if not data:
            return None
        return ExternalProcessHandle.from_mapping(data)

    async def deregister(self, stream_id: str) -> Optional[ExternalProcessHandle]:
        handle = await self.get(stream_id)
        await self.redis_client.delete(self._key(stream_id))
        return handle

    async def list(self) -> List[ExternalProcessHandle]:
        handles = []
        async for key in self.redis_client.scan_iter(match=f"{self.KEY_PREFIX}*"):
            data = await self.redis_client.hgetall(key)
            if data:
                handles.append(ExternalProcessHandle.from_mapping(data))
        return handles

    async def close(self) -> None:
        if self.redis_client:
            await self.redis_client.aclose()
