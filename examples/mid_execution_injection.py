#!/usr/bin/env python3
"""Inject a follow-up message into a running Codex turn, then interrupt.

This example demonstrates:
- capturing the session through on_session_created
- Session.inject_message while the stream is being consumed
- Session.interrupt after a deadline
"""

from __future__ import annotations

import argparse
import asyncio

from codex_app_server_provider import (
    CodexLanguageModel,
    ProviderSettings,
    Session,
)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--model", default="gpt-5.1-codex")
    parser.add_argument("--inject-after", type=float, default=3.0, help="Seconds before injecting.")
    parser.add_argument("--interrupt-after", type=float, default=30.0, help="Seconds before interrupting.")
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> None:
    sessions: list[Session] = []
    model = CodexLanguageModel(
        args.model,
        ProviderSettings(sandbox_mode="read-only", on_session_created=sessions.append),
    )

    async def steer() -> None:
        await asyncio.sleep(args.inject_after)
        await sessions[-1].inject_message("Also count how many of them are Python files.")
        print("\n[injected follow-up]")
        await asyncio.sleep(args.interrupt_after)
        await sessions[-1].interrupt()
        print("\n[interrupted]")

    try:
        result = await model.do_stream(
            [{"role": "user", "content": "List every file in this repository, one per line."}]
        )
        steering = asyncio.create_task(steer())
        async for part in result.stream:
            if part.type == "text-delta":
                print(part.delta, end="", flush=True)
            elif part.type == "finish":
                print(f"\n[finish: {part.finish_reason.unified}]")
        steering.cancel()
    finally:
        await model.close()


def main() -> None:
    asyncio.run(_run(parse_args()))


if __name__ == "__main__":
    main()
