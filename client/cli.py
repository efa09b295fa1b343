"""
Command line client for a genqueue server.

    genqueue status
    genqueue generate --name cats --prompt "a cat" --steps 20
    genqueue upscale cats/00000.png --scale-factor 2
    genqueue cancel <job id>
    genqueue watch
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, Optional, Sequence

from client.connection import ConnectionManager
from shared import protocol
from shared.errors import QueueError

DEFAULT_URL = os.getenv("GENQUEUE_URL", "ws://127.0.0.1:8080/ws")


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _generation_config(args: argparse.Namespace) -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    if args.params:
        with open(args.params, "r", encoding="utf-8") as f:
            config.update(json.load(f))
    for key in ("name", "prompt", "negative_prompt", "steps", "width", "height", "batch_size", "model"):
        value = getattr(args, key, None)
        if value is not None:
            config[key] = value
    return config


async def _run(args: argparse.Namespace) -> int:
    conn = ConnectionManager(args.url, call_timeout_s=args.timeout)
    try:
        if args.command == "status":
            _print(await conn.call("getServerStatus"))
        elif args.command == "generate":
            _print(await conn.call("startGeneration", _generation_config(args)))
        elif args.command == "upscale":
            config: Dict[str, Any] = {}
            if args.upscaler:
                config["upscale_upscaler"] = args.upscaler
            if args.scale_factor is not None:
                config["upscale_scale_factor"] = args.scale_factor
            _print(await conn.call("queueUpscale", {"imagePath": args.image_path, "config": config}))
        elif args.command == "cancel":
            _print(await conn.call("cancelJob", {"jobId": args.job_id}))
        elif args.command == "watch":
            await _watch(conn)
    except QueueError as exc:
        print(f"error [{exc.code}]: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await conn.close()
    return 0


async def _watch(conn: ConnectionManager) -> None:
    def show(type_: str):
        def callback(data: Any) -> None:
            print(json.dumps({"type": type_, "data": data}), flush=True)
        return callback

    for type_ in sorted(protocol.BROADCAST_TYPES):
        conn.subscribe(type_, show(type_))
    await conn.connect()
    _print(await conn.call("getQueueStatus"))
    while True:
        await asyncio.sleep(3600)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="genqueue", description="genqueue websocket client")
    parser.add_argument("--url", default=DEFAULT_URL, help=f"Server websocket URL (default: {DEFAULT_URL})")
    parser.add_argument("--timeout", type=float, default=10.0, help="Per-call timeout in seconds")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show queue and backend status")

    gen = sub.add_parser("generate", help="Queue a one-shot generation job")
    gen.add_argument("--name", required=True, help="Job name; also the output folder")
    gen.add_argument("--params", help="JSON file with txt2img parameters")
    gen.add_argument("--prompt")
    gen.add_argument("--negative-prompt", dest="negative_prompt")
    gen.add_argument("--steps", type=int)
    gen.add_argument("--width", type=int)
    gen.add_argument("--height", type=int)
    gen.add_argument("--batch-size", dest="batch_size", type=int)
    gen.add_argument("--model", help="Checkpoint to select before generating")

    up = sub.add_parser("upscale", help="Queue an upscale of a stored image")
    up.add_argument("image_path", help="Path relative to the output root, e.g. cats/00000.png")
    up.add_argument("--upscaler")
    up.add_argument("--scale-factor", dest="scale_factor", type=float)

    cancel = sub.add_parser("cancel", help="Cancel a queued job")
    cancel.add_argument("job_id")

    sub.add_parser("watch", help="Print broadcasts until interrupted")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
