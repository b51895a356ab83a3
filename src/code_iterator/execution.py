"""Proxy to the sandboxed code-execution collaborator."""

from __future__ import annotations

import asyncio
import contextlib
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from code_iterator.config import Settings
from code_iterator.errors import EmptyResponseError, ExecutionTimeoutError, TransportFailureError
from code_iterator.protocol import IteratorResponse, decode_response, frame_message, split_message

RUNNER_PATH = Path(__file__).with_name("sandbox_runner.py")
RUN_REQUEST_BODY = b'"Run"'
MAX_STDERR_CHARS = 500


def default_sandbox_command() -> list[str]:
    """Run the bundled runner in a fresh interpreter with isolated mode enabled."""

    return [sys.executable, "-I", str(RUNNER_PATH)]


@dataclass(frozen=True)
class ExecutionReply:
    """Decoded collaborator reply plus the raw blob that travelled with it."""

    response: IteratorResponse
    blob: bytes | None


class ExecutionProxy:
    """Send code to the sandbox as one run request and await the reply within a fixed budget.

    Runs are never retried: user code is not known to be idempotent.
    """

    def __init__(self, settings: Settings, *, command: list[str] | None = None) -> None:
        self._command = command or list(settings.sandbox_command) or default_sandbox_command()
        self._timeout_seconds = settings.run_timeout_seconds

    @property
    def command(self) -> list[str]:
        return list(self._command)

    async def run_code(self, code: str) -> ExecutionReply:
        """Execute ``code`` and return the decoded reply.

        Raises:
            ExecutionTimeoutError: the sandbox did not answer within ``run_timeout_seconds``.
            TransportFailureError: the sandbox could not be started or crashed without a reply.
            EmptyResponseError: the sandbox exited cleanly without a reply.
            MalformedEnvelopeError: the reply is not a response envelope.
        """

        request = frame_message(RUN_REQUEST_BODY, code.encode("utf-8"))
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TransportFailureError(f"cannot start sandbox {self._command[0]!r}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(request), timeout=self._timeout_seconds)
        except TimeoutError as exc:
            await _kill(process)
            raise ExecutionTimeoutError(f"no result within {self._timeout_seconds}s") from exc

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if stderr:
            logger.debug("execution.stderr pid={} text={}", process.pid, _tail(stderr))
        if not stdout:
            if process.returncode:
                raise TransportFailureError(f"sandbox exited with {process.returncode}: {_tail(stderr)}")
            raise EmptyResponseError("sandbox replied without a payload")

        body, blob = split_message(stdout)
        response = decode_response(body)
        logger.info(
            "execution.reply variant={} returncode={} elapsed_ms={}",
            type(response).__name__,
            process.returncode,
            elapsed_ms,
        )
        return ExecutionReply(response=response, blob=blob)


async def _kill(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()


def _tail(data: bytes) -> str:
    return data.decode("utf-8", errors="replace").strip()[-MAX_STDERR_CHARS:]
