from unittest.mock import patch

import pytest

from tabpilot.config import Config
from tabpilot.core.state import SessionStatus
from tabpilot.runtime import Runtime
from tests.conftest import EchoTool, StubProvider, tool_call


@pytest.fixture
def config(tmp_path, monkeypatch):
    monkeypatch.setattr("tabpilot.config.TABPILOT_DIR", tmp_path)
    return Config(max_steps=5, cancel_poll_interval=0.01)


class TestRuntime:
    @pytest.mark.asyncio
    async def test_memory_tools_registered(self, config):
        runtime = Runtime(config, tools=[EchoTool()])
        await runtime.connect()
        try:
            assert runtime.memory is not None
            assert {"echo", "lookup_memories", "save_memory"} <= set(runtime.registry.names())
            assert (config.db_dir / "memory.db").exists()
        finally:
            await runtime.close()

        assert runtime.memory is None

    @pytest.mark.asyncio
    async def test_memory_disabled(self, config):
        config.memory = False
        runtime = Runtime(config)
        await runtime.connect()
        try:
            assert "save_memory" not in runtime.registry
            with pytest.raises(RuntimeError):
                runtime.reflector()
        finally:
            await runtime.close()

    @pytest.mark.asyncio
    async def test_session_runs_and_tracks_usage(self, config):
        echo = EchoTool()
        provider = StubProvider([tool_call("echo", "hi"), "done"])
        runtime = Runtime(config, tools=[echo])
        await runtime.connect()
        try:
            with patch.object(runtime.router, "get", return_value=provider):
                session = runtime.create_session()
            outcome = await session.run("say hi")
            await runtime.usage.drain()

            assert outcome.status == SessionStatus.DONE
            assert echo.calls == ["hi"]
            assert runtime.usage.total.total_tokens > 0
        finally:
            await runtime.close()

    @pytest.mark.asyncio
    async def test_connect_idempotent(self, config):
        runtime = Runtime(config)
        await runtime.connect()
        store = runtime.memory
        await runtime.connect()
        try:
            assert runtime.memory is store
        finally:
            await runtime.close()
