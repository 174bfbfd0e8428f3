#!/usr/bin/env python3
"""Stream one Codex turn and print text, reasoning and tool activity.

This example demonstrates:
- creating a model through the provider factory
- consuming the part stream as it arrives
- tool lifecycle parts for commands the agent runs
- aborting the turn with Ctrl+C
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from codex_app_server_provider import (
    CodexError,
    ProviderSettings,
    create_codex_app_server,
)


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the streaming example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("prompt", nargs="?", default="List the files in this directory and summarize them.")
    parser.add_argument("--model", default="gpt-5.1-codex", help="Codex model id.")
    parser.add_argument("--cwd", help="Working directory for the agent.")
    parser.add_argument("--codex-path", help="Codex executable (defaults to $CODEX_PATH or codex).")
    parser.add_argument("--raw", action="store_true", help="Also print raw notifications.")
    parser.add_argument("--verbose", action="store_true", help="Log protocol traffic.")
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> int:
    provider = create_codex_app_server(
        ProviderSettings(
            codex_path=args.codex_path,
            cwd=args.cwd,
            sandbox_mode="read-only",
            verbose=args.verbose,
        )
    )
    model = provider(args.model)
    abort = asyncio.Event()

    try:
        result = await model.do_stream(
            [{"role": "user", "content": args.prompt}],
            abort_signal=abort,
            include_raw_chunks=args.raw,
        )
        print(f"[thread {result.session.thread_id}]")
        async for part in result.stream:
            if part.type == "text-delta":
                print(part.delta, end="", flush=True)
            elif part.type == "reasoning-delta":
                print(f"\n[reasoning] {part.delta}", flush=True)
            elif part.type == "tool-call":
                print(f"\n[{part.tool_name}] {part.input}", flush=True)
            elif part.type == "tool-result":
                status = "failed" if part.is_error else "ok"
                print(f"\n[{part.tool_name} {status}]", flush=True)
            elif part.type == "raw":
                print(f"\n[raw] {part.raw_value}", flush=True)
            elif part.type == "finish":
                print(f"\n[finish: {part.finish_reason.unified}]")
    except asyncio.CancelledError:
        abort.set()
        raise
    except CodexError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        await model.close()
    return 0


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
