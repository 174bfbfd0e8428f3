#!/usr/bin/env python3
"""Give the agent a Python tool through a local MCP server.

This example demonstrates:
- defining a tool with a pydantic argument model
- serving it on a loopback port with LocalMcpServer
- passing the server's config through ProviderSettings.mcp_servers
"""

from __future__ import annotations

import argparse
import asyncio

from pydantic import BaseModel, Field

from codex_app_server_provider import (
    CodexAppServerProvider,
    LocalMcpServer,
    ProviderSettings,
    tool,
)


class WeatherArgs(BaseModel):
    city: str = Field(description="City to look up.")


async def lookup_weather(args: WeatherArgs) -> dict[str, object]:
    await asyncio.sleep(0)
    return {"city": args.city, "forecast": "sunny", "temperature_c": 21}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("prompt", nargs="?", default="What is the weather in Lisbon? Use the weather tool.")
    parser.add_argument("--model", default="gpt-5.1-codex", help="Codex model id.")
    parser.add_argument("--codex-path", help="Codex executable (defaults to $CODEX_PATH or codex).")
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> None:
    weather = tool("get_weather", "Current weather for a city", WeatherArgs, lookup_weather)
    async with LocalMcpServer("local-tools", [weather]) as server:
        print(f"[tools served at {server.url}]")
        provider = CodexAppServerProvider(
            ProviderSettings(
                codex_path=args.codex_path,
                sandbox_mode="read-only",
                mcp_servers={server.name: server.config},
                rmcp_client=True,
            )
        )
        model = provider(args.model)
        try:
            result = await model.do_generate([{"role": "user", "content": args.prompt}])
            print(result.text)
            print(f"[finish: {result.finish_reason.unified}]")
        finally:
            await model.close()


def main() -> None:
    asyncio.run(_run(parse_args()))


if __name__ == "__main__":
    main()
