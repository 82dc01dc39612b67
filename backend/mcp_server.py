# mcp_server.py — Standalone MCP server over stdio
# For MCP clients that spawn a local process instead of connecting over HTTP.
# Tool calls are attributed to the agent named by AGENTBOARD_AGENT, which is
# registered on first use.
#
#   AGENTBOARD_AGENT=claude DATABASE_URL=sqlite+aiosqlite:///./agentboard.db python mcp_server.py

import os
import asyncio
import logging

from starlette.datastructures import State

from database import create_engine_for, create_session_factory, init_db
from events import EventBus
from routers.mcp_tools import create_mcp_server

# stdout carries the protocol; logs go to stderr
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "WARNING").upper(), logging.WARNING),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("agentboard.mcp")

DEFAULT_AGENT_NAME = "mcp-agent"


def build_state(engine) -> State:
    state = State()
    state.session_factory = create_session_factory(engine)
    state.event_bus = EventBus()
    state.write_lock = asyncio.Lock()
    return state


async def main():
    database_url = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./agentboard.db")
    agent_name = os.getenv("AGENTBOARD_AGENT", DEFAULT_AGENT_NAME)

    engine = create_engine_for(database_url)
    await init_db(engine)
    state = build_state(engine)
    server = create_mcp_server(state, agent_name=agent_name)
    logger.info(f"MCP stdio server ready as agent '{agent_name}'")
    try:
        await server.run_stdio_async()
    finally:
        state.event_bus.close()
        await engine.dispose()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
