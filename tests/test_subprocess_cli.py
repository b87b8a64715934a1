"""Tests for the CLI-subprocess backend client.

The ``claude`` executable is replaced by small Python scripts so the tests
exercise real process spawning, stdin/stdout plumbing and shutdown.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from contextlib import aclosing
from pathlib import Path

import pytest

from switchyard.core.converters import StreamJsonConverter
from switchyard.core.errors import AuthExpiredError, BackendRequestError, BackendUnavailableError
from switchyard.core.messages import CanonicalRequest, Turn
from switchyard.core.provider_registry import get_default_registry
from switchyard.core.providers.subprocess_cli import INSTALL_HINT, SubprocessCLIClient, find_cli

ECHO_RESULT = """
prompt = sys.stdin.read()
print(json.dumps({
    "type": "result",
    "subtype": "success",
    "is_error": False,
    "result": json.dumps({"argv": sys.argv[1:], "stdin": prompt}),
    "session_id": "sess-1",
    "usage": {"input_tokens": 5, "output_tokens": 7},
}))
"""

STREAM_EVENTS = """
sys.stdin.read()
print("not json at all")
print(json.dumps({"type": "system", "subtype": "init", "session_id": "s"}))
for word in ("Hello", " world"):
    print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": word}]}}), flush=True)
print(json.dumps({"type": "result", "is_error": False, "result": "Hello world",
                  "usage": {"input_tokens": 2, "output_tokens": 2}}))
"""


def _client(cli_path: Path, **kwargs) -> SubprocessCLIClient:
    kwargs.setdefault("grace_period_sec", 0.2)
    return SubprocessCLIClient(
        get_default_registry().lookup("claude-cli"),
        "sonnet",
        StreamJsonConverter("claude-cli"),
        cli_path=str(cli_path),
        **kwargs,
    )


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


async def _wait_for_file(path: Path, timeout: float = 10.0) -> str:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists() and path.read_text().strip():
            return path.read_text().strip()
        await asyncio.sleep(0.02)
    raise AssertionError(f"{path} was never written")


REQUEST = CanonicalRequest(turns=(Turn("system", "Be terse"), Turn("user", "2+2?")))


@pytest.mark.asyncio
async def test_send_passes_flags_and_prompt(fake_cli) -> None:
    client = _client(fake_cli(ECHO_RESULT))
    response = await client.send(REQUEST)

    echoed = json.loads(response.text)
    assert echoed["argv"] == ["-p", "--output-format=json", "--model", "sonnet"]
    assert echoed["stdin"] == "[System]: Be terse\n\n[User]: 2+2?\n"
    assert response.is_terminal
    assert response.metadata["session_id"] == "sess-1"
    assert response.usage is not None and response.usage.output_tokens == 7
    assert client.cli_version == "1.0.0 (Claude Code)"


@pytest.mark.asyncio
async def test_stream_uses_stream_json_and_skips_garbage(fake_cli) -> None:
    client = _client(fake_cli(STREAM_EVENTS))
    chunks = [chunk async for chunk in client.stream(REQUEST)]

    assert [c.text for c in chunks[:-1]] == ["Hello", " world"]
    terminal = chunks[-1]
    assert terminal.is_terminal
    assert terminal.finish_reason == "stop"
    assert terminal.usage is not None and terminal.usage.input_tokens == 2


@pytest.mark.asyncio
async def test_nonzero_exit_reports_stderr(fake_cli) -> None:
    client = _client(fake_cli('sys.stdin.read()\nsys.stderr.write("boom: model overloaded")\nsys.exit(2)'))
    with pytest.raises(BackendRequestError) as exc_info:
        await client.send(REQUEST)
    assert "boom" in str(exc_info.value)
    assert exc_info.value.provider_name == "claude-cli"


@pytest.mark.asyncio
async def test_login_failure_is_auth_expired(fake_cli) -> None:
    client = _client(fake_cli('sys.stdin.read()\nsys.stderr.write("Invalid API key. Please run /login")\nsys.exit(1)'))
    with pytest.raises(AuthExpiredError):
        await client.send(REQUEST)


@pytest.mark.asyncio
async def test_stream_nonzero_exit_raises_after_events(fake_cli) -> None:
    body = (
        "sys.stdin.read()\n"
        'print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "partial"}]}}))\n'
        'sys.stderr.write("crashed")\n'
        "sys.exit(3)"
    )
    client = _client(fake_cli(body))
    received = []
    with pytest.raises(BackendRequestError):
        async for chunk in client.stream(REQUEST):
            received.append(chunk.text)
    assert received == ["partial"]


@pytest.mark.asyncio
async def test_missing_cli_is_backend_unavailable(tmp_path) -> None:
    with pytest.raises(BackendUnavailableError) as exc_info:
        find_cli(str(tmp_path / "no-such-claude"))
    assert INSTALL_HINT in str(exc_info.value)

    client = _client(tmp_path / "no-such-claude")
    with pytest.raises(BackendUnavailableError):
        await client.send(REQUEST)


@pytest.mark.asyncio
async def test_preflight_timeout_is_backend_unavailable(fake_cli) -> None:
    client = _client(fake_cli("time.sleep(30)", version=None), preflight_timeout_sec=0.5)
    with pytest.raises(BackendUnavailableError) as exc_info:
        await client.send(REQUEST)
    assert "--version" in str(exc_info.value)


@pytest.mark.asyncio
async def test_early_close_kills_process_that_ignores_sigterm(fake_cli, tmp_path) -> None:
    pid_file = tmp_path / "pid"
    body = (
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))\n"
        'print(json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "first"}]}}), flush=True)\n'
        "time.sleep(60)"
    )
    client = _client(fake_cli(body), grace_period_sec=0.3)

    started = time.monotonic()
    async with aclosing(client.stream(REQUEST)) as chunks:
        async for chunk in chunks:
            assert chunk.text == "first"
            break

    pid = int(await _wait_for_file(pid_file))
    assert not _pid_alive(pid)
    assert time.monotonic() - started < 30


@pytest.mark.asyncio
async def test_cancelling_send_terminates_process(fake_cli, tmp_path) -> None:
    pid_file = tmp_path / "pid"
    body = f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))\ntime.sleep(60)"
    client = _client(fake_cli(body))

    task = asyncio.create_task(client.send(REQUEST))
    pid = int(await _wait_for_file(pid_file))
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert not _pid_alive(pid)
