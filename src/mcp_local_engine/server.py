"""MCP server implementation."""
import asyncio
import json
from typing import Any, Dict, List

import mcp.types as types
from mcp.server import stdio
from mcp.server.lowlevel import Server
from mcp.server.models import InitializationOptions

from mcp_local_engine import __version__
from mcp_local_engine.context import EngineContext, create_context
from mcp_local_engine.errors import EngineError, InvalidSpecError, log_error
from mcp_local_engine.logging import configure_logging, get_logger
from mcp_local_engine.types import LifecycleEvent

logger = get_logger("server")

SERVER_NAME = "mcp-local-engine"

ATTEMPTS_SCHEMA = {
    "type": "integer",
    "minimum": 1,
    "description": "Maximum attempts for each retried provider step",
}

tools = [
    types.Tool(
        name="engine_up",
        description="Bring the provider VM and its container engine up",
        inputSchema={
            "type": "object",
            "properties": {
                "max_attempts": ATTEMPTS_SCHEMA,
                "disksize": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Disk size in MB, used only when the VM is first created",
                },
            },
        },
    ),
    types.Tool(
        name="engine_down",
        description="Shut the provider VM down",
        inputSchema={
            "type": "object",
            "properties": {"max_attempts": ATTEMPTS_SCHEMA},
        },
    ),
    types.Tool(
        name="engine_status",
        description="Report whether the provider is installed and running",
        inputSchema={"type": "object", "properties": {}},
    ),
    types.Tool(
        name="engine_ip",
        description="Get the container engine connection parameters",
        inputSchema={"type": "object", "properties": {}},
    ),
    types.Tool(
        name="engine_containers",
        description="List containers managed by this engine",
        inputSchema={
            "type": "object",
            "properties": {
                "app": {"type": "string", "description": "Only list containers of this app"}
            },
        },
    ),
    types.Tool(
        name="engine_container_info",
        description="Show ports and running state of a container",
        inputSchema={
            "type": "object",
            "properties": {
                "cid": {"type": "string", "description": "Container id or name"}
            },
            "required": ["cid"],
        },
    ),
]


def _result(payload: Dict[str, Any]) -> List[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload))]


def _success(data: Any) -> List[types.TextContent]:
    return _result({"success": True, "data": data})


def _failure(error: str) -> List[types.TextContent]:
    return _result({"success": False, "error": error})


def _int_arg(arguments: Dict[str, Any], key: str) -> int | None:
    value = arguments.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidSpecError(f"{key} must be a positive integer, got {value!r}")
    return value


async def handle_tool(
    ctx: EngineContext, name: str, arguments: Dict[str, Any]
) -> List[types.TextContent]:
    """Dispatch one tool call against the engine context."""
    arguments = arguments or {}
    logger.debug("tool_call", tool=name, arguments=arguments)
    try:
        if name == "engine_up":
            await ctx.provider.up(
                max_attempts=_int_arg(arguments, "max_attempts"),
                disksize=_int_arg(arguments, "disksize"),
            )
            return _success({"state": (await ctx.provider.state()).name.lower()})

        elif name == "engine_down":
            await ctx.provider.down(max_attempts=_int_arg(arguments, "max_attempts"))
            return _success({"state": (await ctx.provider.state()).name.lower()})

        elif name == "engine_status":
            return _success(
                {
                    "installed": await ctx.provider.is_installed(),
                    "state": (await ctx.provider.state()).name.lower(),
                }
            )

        elif name == "engine_ip":
            config = await ctx.provider.get_engine_config()
            return _success(config.to_dict())

        elif name == "engine_containers":
            containers = await ctx.containers.list(arguments.get("app"))
            return _success(
                [{"id": c.id, "name": c.name, "app": c.app} for c in containers]
            )

        elif name == "engine_container_info":
            cid = arguments.get("cid")
            info = await ctx.containers.info(cid)
            if info is None:
                return _failure(f"Unknown container: {cid}")
            return _success(info.to_dict())

        return _failure(f"Unknown tool: {name}")

    except EngineError as e:
        log_error(e, {"tool": name, "arguments": arguments})
        return _failure(str(e))


def log_lifecycle(ctx: EngineContext) -> None:
    """Report engine activation on the server log."""

    def activated(event: LifecycleEvent) -> None:
        logger.info("engine_activated")

    def deactivated(event: LifecycleEvent) -> None:
        logger.info("engine_deactivated")

    ctx.events.on(LifecycleEvent.POST_UP, activated)
    ctx.events.on(LifecycleEvent.POST_DOWN, deactivated)


async def init_server(ctx: EngineContext) -> Server:
    logger.info("registered_tools", tools=[t.name for t in tools])

    server = Server(SERVER_NAME)
    log_lifecycle(ctx)

    @server.list_tools()
    async def list_tools() -> List[types.Tool]:
        logger.debug("tools_requested")
        return tools

    @server.call_tool()
    async def call_tool(
        name: str, arguments: Dict[str, Any]
    ) -> list[types.TextContent | types.ImageContent | types.EmbeddedResource]:
        try:
            return await handle_tool(ctx, name, arguments)
        except Exception as e:
            log_error(e, {"tool": name})
            return _failure(str(e))

    return server


async def serve() -> None:
    configure_logging()
    logger.info("starting_server", version=__version__)
    ctx = create_context()
    server = await init_server(ctx)
    try:
        async with stdio.stdio_server() as (read_stream, write_stream):
            init_options = InitializationOptions(
                server_name=SERVER_NAME,
                server_version=__version__,
                capabilities=types.ServerCapabilities(
                    tools=types.ToolsCapability(listChanged=False),
                    logging=types.LoggingCapability(),
                ),
            )
            await server.run(read_stream, write_stream, init_options)
    finally:
        ctx.close()


def main() -> None:
    """Run the MCP server."""
    asyncio.run(serve())
