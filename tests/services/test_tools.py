"""Tool Registry — verifies dispatch, unknown tools, and error capture."""

from agent_server.services.tools import Tool, ToolRegistry


async def _lookup(args):
    return {"city": args["city"], "temp": 21}


def _broken(args):
    raise ValueError("no such city")


def test_register_replaces_by_name():
    registry = ToolRegistry([Tool("a", "first", lambda a: 1)])
    registry.register(Tool("a", "second", lambda a: 2))
    assert len(registry) == 1
    assert registry.get("a").description == "second"


async def test_execute_async_and_sync_tools():
    registry = ToolRegistry([
        Tool("weather", "Weather lookup", _lookup),
        Tool("echo", "Echo", lambda a: a["text"]),
    ])
    weather = await registry.execute("c1", "weather", {"city": "Oslo"})
    assert weather.content == {"city": "Oslo", "temp": 21}
    assert weather.error is None
    echo = await registry.execute("c2", "echo", {"text": "hi"})
    assert echo.text == "hi"


async def test_unknown_tool_is_an_error_result():
    result = await ToolRegistry().execute("c1", "missing", {})
    assert result.error == "Tool 'missing' not found"
    assert result.text == "Error: Tool 'missing' not found"


async def test_tool_exception_becomes_error_text():
    registry = ToolRegistry([Tool("weather", "Weather lookup", _broken)])
    result = await registry.execute("c1", "weather", {})
    assert result.content is None
    assert result.error == "no such city"


def test_describe_uses_schema_key():
    tool = Tool("t", "desc", lambda a: None)
    assert tool.describe() == {
        "name": "t",
        "description": "desc",
        "schema": {"type": "object", "properties": {}},
    }
