#!/usr/bin/env python3
"""
chat_cli.py: Stream a chat completion to the terminal

Usage: python3 chat_cli.py <prompt-file> [--model M] [--config PATH] [--system TEXT]

Reads settings from .chatstream.yaml (or $CHATSTREAM_CONFIG), see config_loader.

Exit codes:
  0 = success
  1 = transport error (connection failed, non-2xx status)
  2 = protocol error (no body, malformed payload)
  3 = cancelled (Ctrl-C)
  4 = invalid invocation or config
"""

import asyncio
import logging
import os
import sys
import time
from typing import Optional

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from chat_stream import (  # noqa: E402
    CancellationError,
    ProtocolError,
    TransportError,
    stream_chat_completion,
)
from chat_types import ROLE_SYSTEM, ROLE_USER, CancelToken, ChatMessage  # noqa: E402
from config_loader import load_config, redact_config, streaming_params_from_config  # noqa: E402
from request_shaper import build_request_options  # noqa: E402

logger = logging.getLogger("chatstream.chat_cli")

EXIT_OK = 0
EXIT_TRANSPORT = 1
EXIT_PROTOCOL = 2
EXIT_CANCELLED = 3
EXIT_USAGE = 4

USAGE = "Usage: python3 chat_cli.py <prompt-file> [--model M] [--config PATH] [--system TEXT]"


def parse_args(args: list[str]) -> dict:
    """Parse argv into {prompt_file, model, config, system}. Raises ValueError on bad usage."""
    options: dict = {"prompt_file": None, "model": None, "config": None, "system": None}
    flags = {"--model": "model", "--config": "config", "--system": "system"}

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in flags:
            if i + 1 >= len(args):
                raise ValueError(f"{arg} requires a value")
            options[flags[arg]] = args[i + 1]
            i += 2
            continue
        if arg.startswith("--"):
            raise ValueError(f"Unknown option: {arg}")
        if options["prompt_file"] is not None:
            raise ValueError(f"Unexpected argument: {arg}")
        options["prompt_file"] = arg
        i += 1

    if options["prompt_file"] is None:
        raise ValueError("<prompt-file> is required")
    return options


async def run_chat(
    prompt: str,
    model: Optional[str] = None,
    config_path: Optional[str] = None,
    system: Optional[str] = None,
    cancel_token: Optional[CancelToken] = None,
    out=None,
    client=None,
) -> ChatMessage:
    """Stream one completion for `prompt`, writing content deltas to `out` as they arrive."""
    out = out or sys.stdout
    config = load_config(config_path)
    logger.debug("Loaded config: %s", redact_config(config))
    params = streaming_params_from_config(config, model=model)

    messages = []
    if system:
        messages.append(ChatMessage(role=ROLE_SYSTEM, content=system))
    messages.append(ChatMessage(role=ROLE_USER, content=prompt))

    request_options = build_request_options(params, messages, cancel_token)
    elapsed: dict = {}

    def on_chunk(content: str, role: str) -> None:
        if content:
            out.write(content)
            out.flush()

    def on_close(before_timestamp: int) -> None:
        elapsed["ms"] = int(time.time() * 1000) - before_timestamp

    message = await stream_chat_completion(
        request_options, on_chunk, on_close, client=client, url=params.chat_url,
    )
    out.write(f"\n\n--- {params.model} | role: {message.role or '?'} | {elapsed.get('ms', 0)}ms ---\n")
    return message


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=os.environ.get("CHATSTREAM_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        options = parse_args(sys.argv[1:] if argv is None else argv)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return EXIT_USAGE

    try:
        with open(options["prompt_file"]) as f:
            prompt = f.read()
    except OSError as e:
        print(f"ERROR: Cannot read prompt file: {e}", file=sys.stderr)
        return EXIT_USAGE

    try:
        asyncio.run(run_chat(prompt, options["model"], options["config"], options["system"]))
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_USAGE
    except TransportError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_TRANSPORT
    except ProtocolError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_PROTOCOL
    except (CancellationError, KeyboardInterrupt):
        print("\nCancelled", file=sys.stderr)
        return EXIT_CANCELLED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
