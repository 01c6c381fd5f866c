"""Tests for loupe.mcp_server: tool registration and error mapping."""

import asyncio
import os
import time
from unittest.mock import AsyncMock, patch

import pytest
from mcp.server.fastmcp.exceptions import ToolError

from loupe._types import DiagramOptions, ErrorKind, ToolResult
from loupe.mcp_server import _unwrap, mcp, mermaid_preview, mermaid_save, server_lifespan


class TestRegistration:
    def test_tools_listed(self):
        tools = asyncio.run(mcp.list_tools())
        names = {t.name for t in tools}
        assert names == {"mermaid_preview", "mermaid_save"}

    def test_preview_schema(self):
        tools = {t.name: t for t in asyncio.run(mcp.list_tools())}
        schema = tools["mermaid_preview"].inputSchema
        assert set(schema["required"]) == {"diagram", "preview_id"}
        assert "theme" in schema["properties"]


class TestUnwrap:
    def test_success_returns_text(self):
        assert _unwrap(ToolResult(text="done")) == "done"

    def test_error_raises_tool_error(self):
        with pytest.raises(ToolError, match="bad id"):
            _unwrap(ToolResult.error(ErrorKind.INVALID_INPUT, "bad id"))


class TestToolFunctions:
    def test_preview_delegates(self):
        fake = AsyncMock(return_value=ToolResult(text="rendered"))
        with patch("loupe.mcp_server.preview_diagram", fake):
            text = asyncio.run(mermaid_preview("graph TD", "arch", theme="dark"))
        assert text == "rendered"
        assert fake.await_args.args == ("graph TD", "arch")
        assert fake.await_args.kwargs["theme"] == "dark"

    def test_save_error_becomes_tool_error(self):
        fake = AsyncMock(return_value=ToolResult.error(ErrorKind.SAVE_FAILED, "nope"))
        with patch("loupe.mcp_server.save_diagram", fake):
            with pytest.raises(ToolError):
                asyncio.run(mermaid_save("arch", "/tmp/out.svg"))


class TestLifespan:
    def test_cleans_old_diagrams_and_shuts_down(self, _isolated_data_dir):
        import loupe

        store = loupe.get_live_server().store
        store.save_source("old", "graph TD", DiagramOptions())

        then = time.time() - 30 * 86400
        os.utime(store.source_path("old"), (then, then))

        async def scenario():
            async with server_lifespan(mcp):
                exists_during = store.diagram_dir("old").exists()
            return exists_during

        assert asyncio.run(scenario()) is False
        assert loupe._live_server is None
        assert (_isolated_data_dir / "logs" / "loupe.log").exists()
