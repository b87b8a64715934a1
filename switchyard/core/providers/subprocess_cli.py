"""Backend client that shells out to the Claude Code CLI.

Every request spawns one ``claude -p`` process. The prompt is written to its
stdin; the answer is read from stdout as a JSON document or as
newline-delimited JSON events. However a request ends (completion, error or
caller cancellation) the process goes through the same shutdown: terminate,
wait for a grace period, then kill.
"""

from __future__ import annotations

import codecs
import json
import os
import shutil
import subprocess
import tempfile
from contextlib import aclosing, asynccontextmanager, suppress
from pathlib import Path
from typing import IO, Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

import anyio
from anyio.abc import Process

from switchyard.core.converters import CliInvocation, FormatConverter
from switchyard.core.errors import AuthExpiredError, BackendRequestError, BackendUnavailableError
from switchyard.core.messages import CanonicalRequest, CanonicalResponse
from switchyard.core.provider_registry import ProviderDescriptor
from switchyard.core.providers.base import BackendClient
from switchyard.utils.log import get_logger

logger = get_logger()

CLI_NAME = "claude"
INSTALL_HINT = "Install it with `npm install -g @anthropic-ai/claude-code`"
SETUP_HINT = "Run `claude` once in a terminal to finish setup and log in"
PREFLIGHT_TIMEOUT_SEC = 5.0
DEFAULT_GRACE_PERIOD_SEC = 5.0
MAX_LINE_BUFFER = 8 * 1024 * 1024
_AUTH_HINTS = ("/login", "invalid api key", "not logged in", "authentication")


def find_cli(explicit_path: Optional[str] = None, provider_name: str = "claude-cli") -> str:
    """Locate the CLI executable.

    Raises:
        BackendUnavailableError: If the CLI cannot be found.
    """
    if explicit_path:
        resolved = shutil.which(explicit_path)
        if resolved:
            return resolved
        raise BackendUnavailableError(
            provider_name, f"configured CLI path {explicit_path!r} is not executable", remediation=INSTALL_HINT
        )

    if cli := shutil.which(CLI_NAME):
        return cli

    locations = [
        Path.home() / ".claude" / "local" / CLI_NAME,
        Path.home() / ".local" / "bin" / CLI_NAME,
        Path("/usr/local") / "bin" / CLI_NAME,
    ]
    for path in locations:
        if path.exists() and path.is_file():
            return str(path)

    raise BackendUnavailableError(provider_name, f"`{CLI_NAME}` was not found on PATH", remediation=INSTALL_HINT)


async def terminate_process(process: Process, grace_period_sec: float) -> None:
    """Two-stage shutdown: SIGTERM, wait up to ``grace_period_sec``, then SIGKILL."""
    if process.returncode is None:
        with suppress(ProcessLookupError):
            process.terminate()
        with anyio.move_on_after(grace_period_sec):
            await process.wait()
        if process.returncode is None:
            logger.warning(
                "[subprocess] CLI ignored SIGTERM; killing it",
                extra={"pid": process.pid, "grace_period_sec": grace_period_sec},
            )
            with suppress(ProcessLookupError):
                process.kill()
    await process.aclose()


def _read_tail(handle: IO[bytes], limit: int = 4000) -> str:
    handle.seek(0)
    return handle.read().decode("utf-8", errors="replace")[-limit:].strip()


class SubprocessCLIClient(BackendClient):
    def __init__(
        self,
        descriptor: ProviderDescriptor,
        model_id: str,
        converter: FormatConverter,
        *,
        cli_path: Optional[str] = None,
        request_timeout_sec: Optional[float] = 120.0,
        grace_period_sec: float = DEFAULT_GRACE_PERIOD_SEC,
        preflight_timeout_sec: float = PREFLIGHT_TIMEOUT_SEC,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(descriptor, model_id, converter, request_timeout_sec=request_timeout_sec)
        self._cli_path = cli_path
        self.grace_period_sec = grace_period_sec
        self.preflight_timeout_sec = preflight_timeout_sec
        self._env = env
        self._resolved_cli: Optional[str] = None
        self.cli_version: Optional[str] = None

    def _build_command(self, args: Sequence[str]) -> List[str]:
        if self._resolved_cli is None:
            self._resolved_cli = find_cli(self._cli_path, self.provider_name)
        return [self._resolved_cli, *args]

    @asynccontextmanager
    async def _spawned(self, args: Sequence[str]) -> AsyncIterator[Tuple[Process, IO[bytes]]]:
        """Start the CLI and guarantee its shutdown when the block exits."""
        cmd = self._build_command(args)
        env: Dict[str, str] = {**os.environ, **(self._env or {})}
        with tempfile.TemporaryFile() as stderr_file:
            try:
                process = await anyio.open_process(
                    cmd,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                    env=env,
                )
            except OSError as exc:
                raise BackendUnavailableError(
                    self.provider_name, f"failed to start {cmd[0]}: {exc}", remediation=INSTALL_HINT
                ) from exc
            logger.debug("[subprocess] Started CLI", extra={"pid": process.pid, "cli_args": list(args)})
            try:
                yield process, stderr_file
            finally:
                with anyio.CancelScope(shield=True):
                    await terminate_process(process, self.grace_period_sec)

    async def _write_stdin(self, process: Process, text: str) -> None:
        if process.stdin is None:
            return
        try:
            if text:
                await process.stdin.send(text.encode("utf-8"))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError, BrokenPipeError) as exc:
            logger.debug("[subprocess] CLI closed stdin early: %s", exc)
        finally:
            with suppress(anyio.BrokenResourceError, anyio.ClosedResourceError, BrokenPipeError):
                await process.stdin.aclose()

    async def _read_all(self, process: Process) -> bytes:
        chunks: List[bytes] = []
        if process.stdout is not None:
            async for data in process.stdout:
                chunks.append(data)
        return b"".join(chunks)

    def _exit_error(self, returncode: int, stderr_text: str) -> Exception:
        detail = stderr_text or f"exited with code {returncode}"
        if any(hint in detail.lower() for hint in _AUTH_HINTS):
            return AuthExpiredError(self.provider_name, f"{detail} ({SETUP_HINT})")
        return BackendRequestError(self.provider_name, f"CLI exited with code {returncode}: {detail}")

    async def ensure_ready(self) -> str:
        """Check that the CLI is installed and answers ``--version``.

        Raises:
            BackendUnavailableError: If the CLI is missing or not ready.
        """
        if self.cli_version is not None:
            return self.cli_version
        try:
            with anyio.fail_after(self.preflight_timeout_sec):
                async with self._spawned(["--version"]) as (process, stderr_file):
                    await self._write_stdin(process, "")
                    output = await self._read_all(process)
                    returncode = await process.wait()
        except TimeoutError as exc:
            raise BackendUnavailableError(
                self.provider_name,
                f"`{CLI_NAME} --version` did not answer within {self.preflight_timeout_sec:g}s",
                remediation=SETUP_HINT,
            ) from exc
        version = output.decode("utf-8", errors="replace").strip()
        if returncode != 0 or not version:
            raise BackendUnavailableError(
                self.provider_name,
                f"`{CLI_NAME} --version` failed with exit code {returncode}",
                remediation=SETUP_HINT,
            )
        self.cli_version = version
        logger.debug("[subprocess] CLI is ready", extra={"version": version})
        return version

    async def send(self, request: CanonicalRequest) -> CanonicalResponse:
        await self.ensure_ready()
        prepared = self.prepare(request, stream=False)
        invocation: CliInvocation = self.converter.to_wire(prepared)
        try:
            with anyio.fail_after(self.request_timeout_sec):
                async with self._spawned(invocation.args) as (process, stderr_file):
                    await self._write_stdin(process, invocation.stdin)
                    output = await self._read_all(process)
                    returncode = await process.wait()
                    stderr_text = _read_tail(stderr_file) if returncode != 0 else ""
        except TimeoutError as exc:
            raise BackendUnavailableError(
                self.provider_name, f"CLI did not answer within {self.request_timeout_sec:g}s"
            ) from exc

        text = output.decode("utf-8", errors="replace").strip()
        try:
            payload: Any = json.loads(text) if text else None
        except json.JSONDecodeError:
            payload = None
        if returncode != 0 and not isinstance(payload, dict):
            raise self._exit_error(returncode, stderr_text)
        if payload is None:
            raise self.converter.protocol_error("CLI output is not JSON", text)
        return self.converter.from_wire(payload, prepared)

    async def stream(self, request: CanonicalRequest) -> AsyncIterator[CanonicalResponse]:
        await self.ensure_ready()
        prepared = self.prepare(request, stream=True)
        invocation: CliInvocation = self.converter.to_wire(prepared)
        async with self._spawned(invocation.args) as (process, stderr_file):
            await self._write_stdin(process, invocation.stdin)
            events = self._read_events(process, stderr_file)
            async with aclosing(self.converter.normalize_stream(events, prepared)) as chunks:
                async for chunk in chunks:
                    yield chunk

    def _parse_line(self, line: str) -> Optional[Dict[str, Any]]:
        line = line.strip()
        if not line:
            return None
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("[subprocess] Skipping non-JSON output line", extra={"raw_line": line[:500]})
            return None
        if not isinstance(event, dict):
            raise self.converter.protocol_error("stream event is not an object", event)
        return event

    async def _read_events(self, process: Process, stderr_file: IO[bytes]) -> AsyncIterator[Dict[str, Any]]:
        if process.stdout is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while True:
            try:
                if self.request_timeout_sec:
                    with anyio.fail_after(self.request_timeout_sec):
                        data = await process.stdout.receive()
                else:
                    data = await process.stdout.receive()
            except anyio.EndOfStream:
                break
            except TimeoutError as exc:
                raise BackendUnavailableError(
                    self.provider_name, f"CLI produced no output for {self.request_timeout_sec:g}s"
                ) from exc
            buffer += decoder.decode(data)
            if len(buffer) > MAX_LINE_BUFFER:
                raise self.converter.protocol_error(
                    f"stream line exceeded {MAX_LINE_BUFFER} bytes", buffer[:2000]
                )
            *lines, buffer = buffer.split("\n")
            for line in lines:
                event = self._parse_line(line)
                if event is not None:
                    yield event

        event = self._parse_line(buffer + decoder.decode(b"", final=True))
        if event is not None:
            yield event

        returncode = await process.wait()
        if returncode != 0:
            raise self._exit_error(returncode, _read_tail(stderr_file))
