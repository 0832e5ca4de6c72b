#!/usr/bin/env python3
"""Run one Codex turn over stdio and print the structured result.

This example demonstrates:
- spawning `codex app-server` with settings taken from the environment
- starting or resuming a thread
- file-based approvals (answer them with examples/approve.py)
- Ctrl-C aborting the turn wait through an AbortController
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import signal
import sys

from codex_collab import (
    AbortController,
    AutoApproveHandler,
    CodexError,
    CollabSettings,
    EventAccumulator,
    FileApprovalHandler,
    ThreadConfig,
    TurnOptions,
    UNSET,
    connect,
    run_turn,
)


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the stdio example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("prompt", help="Prompt to send as the turn input.")
    parser.add_argument("--thread", help="Resume this thread id instead of starting one.")
    parser.add_argument("--cwd", help="Working directory for the thread.")
    parser.add_argument("--model", help="Model override for the thread.")
    parser.add_argument(
        "--cmd",
        help="Command used to launch app-server, e.g. 'codex app-server'.",
    )
    parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Accept every approval request instead of waiting for a decision file.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Turn timeout in seconds (default: CODEX_COLLAB_TURN_TIMEOUT or 1200).",
    )
    return parser.parse_args()


def _progress(line: str) -> None:
    print(f"[codex] {line}", file=sys.stderr)


async def run(args: argparse.Namespace) -> int:
    """Run a single turn and print its result."""
    settings = CollabSettings.from_env()
    command = shlex.split(args.cmd) if args.cmd else None
    controller = AbortController()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.abort, "interrupted")
    except NotImplementedError:
        pass

    if args.auto_approve:
        approvals = AutoApproveHandler()
    else:
        approvals = FileApprovalHandler(
            settings.approvals_dir,
            on_progress=_progress,
            poll_interval=settings.approval_poll_interval,
            timeout=settings.approval_timeout,
        )

    try:
        client = await connect(command=command, settings=settings)
        async with client:
            config = ThreadConfig(
                cwd=args.cwd or UNSET,
                model=args.model or UNSET,
            )
            if args.thread:
                thread_id = await client.resume_thread(args.thread, config)
            else:
                thread_id = await client.start_thread(config)
            print(f"[thread] {thread_id}", file=sys.stderr)

            result = await run_turn(
                client,
                thread_id,
                args.prompt,
                TurnOptions(
                    accumulator=EventAccumulator(on_progress=_progress),
                    approval_handler=approvals,
                    timeout=args.timeout,
                    signal=controller.signal,
                ),
            )
    except CodexError as exc:
        print(f"[error] {exc.kind}: {exc}", file=sys.stderr)
        return 1

    print(result.output)
    print(
        "[result]"
        f" status={result.status}"
        f" files={len(result.files_changed)}"
        f" commands={len(result.commands_run)}"
        f" duration={result.duration_ms}ms",
        file=sys.stderr,
    )
    if result.error:
        print(f"[result] error={result.error}", file=sys.stderr)
    return 0 if result.status == "completed" else 2


def main() -> None:
    """CLI entrypoint."""
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    args = parse_args()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
