"""Local stand-in agent that prints a deterministic stream-json session.

Used by smoke checks and integration tests in place of the real agent CLI::

    python -m storyloop.agent.echo_agent --prompt "hello"
"""

from __future__ import annotations

import argparse
import json
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Emit init, one tool round-trip, the echoed prompt, and a result record."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", required=True)
    parser.add_argument("--model", default="echo")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="", help="Line written to stderr before exiting.")
    parser.add_argument("--delay", type=float, default=0.0, help="Pause between records.")
    args = parser.parse_args(argv)

    records = [
        {"type": "system", "subtype": "init", "session_id": "echo-session", "model": args.model},
        {
            "type": "assistant",
            "message": {
                "content": [
                    {
                        "type": "tool_use",
                        "id": "toolu_echo_1",
                        "name": "Bash",
                        "input": {"command": "echo ready", "description": "Warm up"},
                    },
                ],
            },
        },
        {
            "type": "user",
            "message": {
                "content": [{"type": "tool_result", "tool_use_id": "toolu_echo_1"}],
            },
            "tool_use_result": {"stdout": "ready", "stderr": ""},
        },
        {
            "type": "assistant",
            "message": {
                "content": [{"type": "text", "text": args.prompt}],
                "usage": {"input_tokens": len(args.prompt.split()), "output_tokens": 1},
            },
        },
        {
            "type": "result",
            "subtype": "success" if args.exit_code == 0 else "error",
            "is_error": args.exit_code != 0,
            "result": args.prompt,
        },
    ]

    for record in records:
        sys.stdout.write(json.dumps(record) + "\n")
        sys.stdout.flush()
        if args.delay > 0:
            time.sleep(args.delay)

    if args.stderr:
        sys.stderr.write(args.stderr + "\n")
        sys.stderr.flush()
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
