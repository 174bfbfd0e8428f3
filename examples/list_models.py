#!/usr/bin/env python3
"""Print the models a local codex app-server offers."""

from __future__ import annotations

import argparse
import asyncio

from codex_app_server_provider import list_models


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--codex-path", help="Codex executable (defaults to $CODEX_PATH or codex).")
    parser.add_argument("--provider", action="append", dest="providers", help="Filter by model provider.")
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> None:
    result = await list_models(codex_path=args.codex_path, model_providers=args.providers)
    for model in result.models:
        marker = "*" if result.default_model is not None and model.id == result.default_model.id else " "
        efforts = ", ".join(option.reasoning_effort for option in model.supported_reasoning_efforts)
        print(f"{marker} {model.id:<28} {model.display_name}")
        if efforts:
            print(f"    reasoning: {efforts} (default: {model.default_reasoning_effort})")


def main() -> None:
    asyncio.run(_run(parse_args()))


if __name__ == "__main__":
    main()
