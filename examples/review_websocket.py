#!/usr/bin/env python3
"""Review uncommitted changes through an app-server listening on a websocket.

Start the server separately, for example:
    codex app-server --listen ws://127.0.0.1:8765
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

from codex_collab import (
    CodexClient,
    CodexError,
    EventAccumulator,
    ReviewOptions,
    ThreadConfig,
    run_review,
)


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the websocket review example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--url",
        default=os.getenv("CODEX_APP_SERVER_WS_URL", "ws://127.0.0.1:8765"),
        help="Websocket URL of the app-server.",
    )
    parser.add_argument("--token", default=os.getenv("CODEX_APP_SERVER_TOKEN"))
    parser.add_argument("--base", help="Review against this base branch instead of the worktree.")
    parser.add_argument("--cwd", default=os.getcwd())
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    target = (
        {"type": "baseBranch", "branch": args.base}
        if args.base
        else {"type": "uncommittedChanges"}
    )
    try:
        async with CodexClient.connect_websocket(args.url, token=args.token) as client:
            thread_id = await client.start_thread(
                ThreadConfig(cwd=args.cwd, sandbox="read-only", approval_policy="never")
            )
            result = await run_review(
                client,
                thread_id,
                target,  # type: ignore[arg-type]
                ReviewOptions(
                    accumulator=EventAccumulator(
                        on_progress=lambda line: print(f"[codex] {line}", file=sys.stderr)
                    ),
                    delivery="inline",
                ),
            )
    except CodexError as exc:
        print(f"[error] {exc.kind}: {exc}", file=sys.stderr)
        return 1

    print(result.output)
    return 0 if result.status == "completed" else 2


def main() -> None:
    """CLI entrypoint."""
    raise SystemExit(asyncio.run(run(parse_args())))


if __name__ == "__main__":
    main()
