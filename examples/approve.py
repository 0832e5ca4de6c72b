#!/usr/bin/env python3
"""Answer file-based approval requests from a running turn.

Usage:
    approve.py list
    approve.py approve <id>
    approve.py decline <id>
"""

from __future__ import annotations

import argparse
import sys

from codex_collab import (
    ApprovalError,
    CollabSettings,
    pending_approvals,
    write_decision,
)

DECISIONS = {
    "approve": "accept",
    "approve-session": "acceptForSession",
    "decline": "decline",
    "cancel": "cancel",
}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("action", choices=["list", *DECISIONS])
    parser.add_argument("approval_id", nargs="?")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    approvals_dir = CollabSettings.from_env().approvals_dir

    if args.action == "list":
        for approval_id in pending_approvals(approvals_dir):
            print(approval_id)
        return

    if not args.approval_id:
        raise SystemExit(f"{args.action} needs an approval id")
    try:
        write_decision(approvals_dir, args.approval_id, DECISIONS[args.action])
    except (ApprovalError, ValueError) as exc:
        print(f"[error] {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    print(f"{DECISIONS[args.action]}: {args.approval_id}")


if __name__ == "__main__":
    main()
