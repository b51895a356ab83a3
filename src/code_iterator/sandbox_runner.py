"""Bundled execution collaborator.

Reads one framed request from stdin (first line the JSON body ``"Run"``, the rest
the source code), executes the code with its output captured and writes
``"Run"`` followed by a JSON result blob to stdout. This file only depends on
the standard library because it runs in an isolated interpreter.
"""

from __future__ import annotations

import contextlib
import io
import json
import os
import sys
import traceback
from typing import Any, BinaryIO


def run_source(source: str) -> dict[str, Any]:
    stdout = io.StringIO()
    stderr = io.StringIO()
    error: str | None = None
    namespace: dict[str, Any] = {"__name__": "__main__"}
    with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
        try:
            exec(compile(source, "<user-code>", "exec"), namespace)  # noqa: S102 - this process is the sandbox.
        except SystemExit as exc:
            if exc.code not in (None, 0):
                error = f"SystemExit: {exc.code}"
        except Exception as exc:
            # Drop this module's frame so the trace starts at the user's code.
            tb = exc.__traceback__.tb_next if exc.__traceback__ else None
            error = "".join(traceback.format_exception(type(exc), exc, tb))
    return {"stdout": stdout.getvalue(), "stderr": stderr.getvalue(), "error": error}


def _write_reply(reply: BinaryIO, body: Any, blob: Any = None) -> None:
    reply.write(json.dumps(body).encode("utf-8"))
    if blob is not None:
        reply.write(b"\n")
        reply.write(json.dumps(blob, ensure_ascii=False).encode("utf-8"))
    reply.flush()


def main() -> int:
    data = sys.stdin.buffer.read()
    # Keep the reply channel private; anything written straight to fd 1 lands on stderr.
    reply = os.fdopen(os.dup(1), "wb")
    os.dup2(2, 1)

    body, _, code = data.partition(b"\n")
    try:
        tag = json.loads(body)
    except ValueError:
        tag = None
    with reply:
        if tag != "Run":
            _write_reply(reply, {"Error": f"unsupported request: {body[:80].decode('utf-8', errors='replace')}"})
            return 0
        _write_reply(reply, "Run", run_source(code.decode("utf-8", errors="replace")))
    return 0


if __name__ == "__main__":
    sys.exit(main())
