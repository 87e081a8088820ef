"""Tests for the chat CLI (argument parsing, streaming output, exit codes)."""

import asyncio
import io
import json
import os
import sys

import httpx
import pytest

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import chat_cli
from chat_cli import (
    EXIT_CANCELLED,
    EXIT_OK,
    EXIT_PROTOCOL,
    EXIT_TRANSPORT,
    EXIT_USAGE,
    main,
    parse_args,
    run_chat,
)
from chat_stream import CancellationError, ProtocolError, TransportError
from chat_types import ChatMessage


def run(coro):
    """Run async test in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


STREAM = (
    b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":"Hello"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":", there"}}]}\n\n'
    b"data: [DONE]\n\n"
)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "chat.yaml"
    path.write_text(
        "chatstream:\n"
        "  api_key: sk-cli\n"
        "  model: gpt-cli\n"
        "  base_url: http://llm.local/v1\n"
        "  params:\n"
        "    temperature: 0\n"
    )
    return str(path)


class TestParseArgs:
    def test_prompt_only(self):
        assert parse_args(["p.txt"]) == {"prompt_file": "p.txt", "model": None, "config": None, "system": None}

    def test_all_flags(self):
        options = parse_args(["--model", "m", "p.txt", "--config", "c.yaml", "--system", "be nice"])
        assert options == {"prompt_file": "p.txt", "model": "m", "config": "c.yaml", "system": "be nice"}

    def test_missing_prompt(self):
        with pytest.raises(ValueError, match="prompt-file"):
            parse_args(["--model", "m"])

    def test_flag_without_value(self):
        with pytest.raises(ValueError, match="requires a value"):
            parse_args(["p.txt", "--model"])

    def test_unknown_flag(self):
        with pytest.raises(ValueError, match="Unknown option"):
            parse_args(["p.txt", "--verbose"])

    def test_extra_positional(self):
        with pytest.raises(ValueError, match="Unexpected argument"):
            parse_args(["a.txt", "b.txt"])


class TestRunChat:
    def test_streams_content_to_output(self, config_file):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=STREAM)

        async def go(out):
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await run_chat(
                    "Say hello", config_path=config_file, system="Be terse.", out=out, client=client,
                )

        out = io.StringIO()
        message = run(go(out))

        assert message == ChatMessage(role="assistant", content="Hello, there")
        assert out.getvalue().startswith("Hello, there\n\n--- gpt-cli | role: assistant |")
        assert seen["url"] == "http://llm.local/v1/chat/completions"
        assert seen["body"]["messages"] == [
            {"role": "system", "content": "Be terse."},
            {"role": "user", "content": "Say hello"},
        ]
        assert seen["body"]["temperature"] == 0

    def test_model_flag_overrides_config(self, config_file):
        seen = {}

        def handler(request):
            seen["model"] = json.loads(request.content)["model"]
            return httpx.Response(200, content=STREAM)

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await run_chat("x", model="gpt-other", config_path=config_file, out=io.StringIO(), client=client)

        run(go())
        assert seen["model"] == "gpt-other"

    def test_loaded_config_logged_redacted(self, config_file, caplog):
        caplog.set_level("DEBUG", logger="chatstream.chat_cli")

        async def go():
            transport = httpx.MockTransport(lambda request: httpx.Response(200, content=STREAM))
            async with httpx.AsyncClient(transport=transport) as client:
                return await run_chat("x", config_path=config_file, out=io.StringIO(), client=client)

        run(go())
        records = [r.getMessage() for r in caplog.records if r.name == "chatstream.chat_cli"]
        assert len(records) == 1
        assert "gpt-cli" in records[0]
        assert "***REDACTED***" in records[0]
        assert "sk-cli" not in records[0]


class TestMainExitCodes:
    @pytest.fixture
    def prompt_file(self, tmp_path):
        path = tmp_path / "prompt.txt"
        path.write_text("hello")
        return str(path)

    def _patch_run_chat(self, monkeypatch, exc):
        async def fake_run_chat(*args, **kwargs):
            raise exc

        monkeypatch.setattr(chat_cli, "run_chat", fake_run_chat)

    def test_usage_error(self):
        assert main([]) == EXIT_USAGE

    def test_unreadable_prompt_file(self, tmp_path):
        assert main([str(tmp_path / "missing.txt")]) == EXIT_USAGE

    def test_invalid_config(self, prompt_file, tmp_path):
        assert main([prompt_file, "--config", str(tmp_path / "absent.yaml")]) == EXIT_USAGE

    def test_success(self, prompt_file, monkeypatch):
        async def fake_run_chat(*args, **kwargs):
            return ChatMessage(role="assistant", content="ok")

        monkeypatch.setattr(chat_cli, "run_chat", fake_run_chat)
        assert main([prompt_file]) == EXIT_OK

    def test_transport_error(self, prompt_file, monkeypatch):
        self._patch_run_chat(monkeypatch, TransportError("down", status_code=503))
        assert main([prompt_file]) == EXIT_TRANSPORT

    def test_protocol_error(self, prompt_file, monkeypatch):
        self._patch_run_chat(monkeypatch, ProtocolError("malformed payload"))
        assert main([prompt_file]) == EXIT_PROTOCOL

    def test_cancelled(self, prompt_file, monkeypatch):
        self._patch_run_chat(monkeypatch, CancellationError("cancelled"))
        assert main([prompt_file]) == EXIT_CANCELLED
