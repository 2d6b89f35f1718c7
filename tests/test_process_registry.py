"""
Tests for the transcoder process registries
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import json
import pytest
from unittest.mock import AsyncMock, MagicMock

from process_registry import ExternalProcessHandle, InMemoryProcessRegistry, RedisProcessRegistry


def make_handle(stream_id="s1", **overrides):
    values = dict(pid=4242, stream_id=stream_id, channel_id="c1",
                  command=["ffmpeg", "-i", "http://u/a.ts", "out.m3u8"],
                  started_at=1700000000.0, log_path="/tmp/ffmpeg_s1.log")
    values.update(overrides)
    return ExternalProcessHandle(**values)


class TestHandleMapping:
    """Handles are flattened to string hashes for Redis"""

    def test_to_mapping(self):
        mapping = make_handle().to_mapping()
        assert mapping["pid"] == "4242"
        assert json.loads(mapping["command"])[0] == "ffmpeg"
        assert mapping["output_path"] == ""
        assert all(isinstance(v, str) for v in mapping.values())

    def test_from_mapping_restores_handle(self):
        handle = make_handle(owner="worker-a")
        restored = ExternalProcessHandle.from_mapping(handle.to_mapping())
        assert restored == handle
        assert restored.output_path is None


class TestInMemoryRegistry:
    """Process-local registry"""

    @pytest.mark.asyncio
    async def test_register_get_deregister(self):
        registry = InMemoryProcessRegistry()
        await registry.register(make_handle("s1"))
        await registry.register(make_handle("s2", pid=5000))

        assert (await registry.get("s1")).pid == 4242
        assert {h.stream_id for h in await registry.list()} == {"s1", "s2"}

        removed = await registry.deregister("s1")
        assert removed.stream_id == "s1"
        assert await registry.get("s1") is None
        assert await registry.deregister("s1") is None

        await registry.close()
        assert await registry.list() == []


class TestRedisRegistry:
    """Durable registry backed by transcode:{stream_id} hashes"""

    def make_registry(self):
        client = MagicMock()
        client.hset = AsyncMock()
        client.hgetall = AsyncMock(return_value={})
        client.delete = AsyncMock()
        client.ping = AsyncMock()
        client.aclose = AsyncMock()
        return RedisProcessRegistry("redis://localhost:6379/0", "worker-a", client=client), client

    @pytest.mark.asyncio
    async def test_register_stamps_owner(self):
        registry, client = self.make_registry()
        await registry.connect()
        await registry.register(make_handle())

        client.ping.assert_awaited_once()
        key = client.hset.await_args.args[0]
        mapping = client.hset.await_args.kwargs["mapping"]
        assert key == "transcode:s1"
        assert mapping["owner"] == "worker-a"

    @pytest.mark.asyncio
    async def test_get_and_deregister(self):
        registry, client = self.make_registry()
        assert await registry.get("missing") is None

        client.hgetall.return_value = make_handle(owner="worker-b").to_mapping()
        handle = await registry.deregister("s1")
        assert handle.owner == "worker-b"
        client.delete.assert_awaited_once_with("transcode:s1")

    @pytest.mark.asyncio
    async def test_list_scans_prefix(self):
        registry, client = self.make_registry()
        stored = {
            "transcode:s1": make_handle("s1").to_mapping(),
            "transcode:s2": make_handle("s2", pid=77).to_mapping(),
        }

        async def scan_iter(match):
            assert match == "transcode:*"
            for key in stored:
                yield key

        client.scan_iter = scan_iter
        client.hgetall = AsyncMock(side_effect=lambda key: stored[key])

        handles = await registry.list()
        assert [(h.stream_id, h.pid) for h in handles] == [("s1", 4242), ("s2", 77)]

        await registry.close()
        client.aclose.assert_awaited_once()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
