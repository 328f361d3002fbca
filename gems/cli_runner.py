from __future__ import annotations

import asyncio
import logging
import os
import signal
from enum import Enum
from typing import List, Optional

log = logging.getLogger(__name__)

_AUTH_MARKERS = ("authentication", "unauthorized", "invalid api key", "not logged in", "please run /login")
_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "usage limit", "too many requests")
# Only these prefixes mark a zero-exit run as failed; model output may mention errors freely
_ERROR_PREFIXES = ("error:", "api error", "invalid api key", "authentication failed")
# How long to wait for the pipes to drain once the process group is killed
_DRAIN_TIMEOUT = 2.0


class TaskState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class FailureReason(str, Enum):
    MISSING = "missing"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    EXIT = "exit"
    CANCELLED = "cancelled"


def classify_failure(text: str) -> FailureReason:
    low = (text or "").lower()
    if any(marker in low for marker in _AUTH_MARKERS):
        return FailureReason.AUTH
    if any(marker in low for marker in _RATE_LIMIT_MARKERS):
        return FailureReason.RATE_LIMIT
    return FailureReason.EXIT


class CliTask:
    """One run of an external generation command.

    NOT_STARTED -> RUNNING -> SUCCEEDED | FAILED | TIMED_OUT. The timeout
    is a timer that sets the cancellation token; whoever sets the token, the
    process is killed and reaped before the task settles. A task runs once.
    """

    def __init__(self, argv: List[str], stdin_text: str = "", timeout: float = 60.0):
        if not argv:
            raise ValueError("argv must not be empty")
        self.argv = list(argv)
        self.stdin_text = stdin_text
        self.timeout = timeout
        self.state = TaskState.NOT_STARTED
        self.output = ""
        self.returncode: Optional[int] = None
        self.reason: Optional[FailureReason] = None
        self.message = ""
        self.cancel_token = asyncio.Event()
        self._timed_out = False

    def cancel(self) -> None:
        self.cancel_token.set()

    def _expire(self) -> None:
        self._timed_out = True
        self.cancel_token.set()

    def _fail(self, reason: FailureReason, message: str) -> None:
        self.state = TaskState.FAILED
        self.reason = reason
        self.message = message
        log.warning("cli failed cmd=%s reason=%s msg=%s", self.argv[0], reason.value, message[:200])

    async def run(self) -> "CliTask":
        if self.state is not TaskState.NOT_STARTED:
            raise RuntimeError(f"task already {self.state.value}")
        self.state = TaskState.RUNNING
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=(os.name == "posix"),
            )
        except (FileNotFoundError, PermissionError) as exc:
            self._fail(FailureReason.MISSING, f"command not found: {self.argv[0]} ({exc})")
            return self

        loop = asyncio.get_running_loop()
        timer = loop.call_later(self.timeout, self._expire)
        comm = asyncio.ensure_future(proc.communicate(self.stdin_text.encode("utf-8")))
        token_wait = asyncio.ensure_future(self.cancel_token.wait())
        try:
            done, _ = await asyncio.wait({comm, token_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            timer.cancel()
            token_wait.cancel()

        if comm not in done:
            await self._kill(proc, comm)
            if self._timed_out:
                self.state = TaskState.TIMED_OUT
                self.message = f"timed out after {self.timeout:g}s"
                log.warning("cli timeout cmd=%s after=%.1fs", self.argv[0], self.timeout)
            else:
                self._fail(FailureReason.CANCELLED, "cancelled")
            return self

        stdout, _ = comm.result()
        self.output = (stdout or b"").decode("utf-8", errors="replace")
        self.returncode = proc.returncode
        if proc.returncode != 0:
            text = self.output.strip() or f"exit status {proc.returncode}"
            self._fail(classify_failure(text), text)
            return self
        head = self.output.lstrip().lower()
        if head.startswith(_ERROR_PREFIXES):
            self._fail(classify_failure(head), self.output.strip())
            return self
        if not self.output.strip():
            self._fail(FailureReason.EXIT, "empty output")
            return self
        self.state = TaskState.SUCCEEDED
        log.info("cli ok cmd=%s chars=%d", self.argv[0], len(self.output))
        return self

    async def _kill(self, proc: asyncio.subprocess.Process, comm: "asyncio.Future") -> None:
        """Kill the whole process group, then drain output for at most ``_DRAIN_TIMEOUT``.

        A grandchild that escaped the group may still hold the pipe open; the
        drain is abandoned rather than waited out.
        """
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.kill()
        stdout = b""
        done, _ = await asyncio.wait({comm}, timeout=_DRAIN_TIMEOUT)
        if comm in done:
            try:
                stdout, _ = comm.result()
            except (BrokenPipeError, ConnectionResetError):
                stdout = b""
        else:
            comm.cancel()
            log.warning("cli output still open after kill cmd=%s; abandoning drain", self.argv[0])
        self.output = (stdout or b"").decode("utf-8", errors="replace")
        self.returncode = proc.returncode

