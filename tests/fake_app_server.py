"""Minimal stand-in for `codex app-server`, speaking the stdio line protocol."""

from __future__ import annotations

import json
import sys


def send(obj):
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()


thread_counter = 0
turn_counter = 0

sys.stderr.write("fake app-server ready\n")
sys.stderr.flush()

for raw in sys.stdin:
    raw = raw.strip()
    if not raw:
        continue
    msg = json.loads(raw)

    if "method" in msg and msg.get("id") is not None:
        method = msg["method"]
        req_id = msg["id"]
        params = msg.get("params") or {}

        if method == "initialize":
            send({"id": req_id, "result": {"userAgent": "fake-codex/0.0.1"}})
        elif method == "thread/start":
            thread_counter += 1
            tid = f"thr_{thread_counter}"
            send({"id": req_id, "result": {"thread": {"id": tid, "preview": ""}}})
        elif method == "turn/start":
            turn_counter += 1
            turn_id = f"turn_{turn_counter}"
            tid = params["threadId"]
            text = params["input"][0]["text"]
            decision = None

            if text == "race":
                # Completion is written before the start response.
                send(
                    {
                        "method": "turn/completed",
                        "params": {"threadId": tid, "turn": {"id": turn_id, "status": "completed"}},
                    }
                )
                send({"id": req_id, "result": {"turn": {"id": turn_id, "status": "inProgress"}}})
                continue

            send({"id": req_id, "result": {"turn": {"id": turn_id, "status": "inProgress"}}})

            if text == "approve":
                send(
                    {
                        "id": "approval-1",
                        "method": "item/commandExecution/requestApproval",
                        "params": {
                            "threadId": tid,
                            "turnId": turn_id,
                            "itemId": "cmd-1",
                            "command": "echo hi",
                        },
                    }
                )
                raw_response = sys.stdin.readline()
                if raw_response:
                    decision = json.loads(raw_response).get("result", {}).get("decision")

            # Both messages in one write so they arrive in a single read.
            sys.stdout.write(
                json.dumps({"method": "item/agentMessage/delta", "params": {"delta": "hello "}})
                + "\n"
                + json.dumps({"method": "item/agentMessage/delta", "params": {"delta": "world"}})
                + "\n"
            )
            sys.stdout.flush()
            if decision is not None:
                send({"method": "item/agentMessage/delta", "params": {"delta": f" ({decision})"}})
            send(
                {
                    "method": "turn/completed",
                    "params": {"threadId": tid, "turn": {"id": turn_id, "status": "completed"}},
                }
            )
        else:
            send({"id": req_id, "error": {"code": -32601, "message": f"unknown method {method}"}})
