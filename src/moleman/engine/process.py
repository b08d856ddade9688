"""Subprocess supervision for agent nodes.

Each process gets two reader threads (stdout, stderr) that persist, capture and
optionally echo bytes as they arrive, plus at most one ``threading.Timer`` that
sends SIGTERM when the node timeout expires.  The timer never touches the
streams: drains run until EOF and the node completes only after both drains
and the process have finished.
"""

from __future__ import annotations

import codecs
import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TextIO

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_NOT_EXECUTABLE = 126
EXIT_COMMAND_NOT_FOUND = 127
_SIGNAL_EXIT_BASE = 128
_READ_CHUNK = 64 * 1024


@dataclass(slots=True)
class StreamPolicy:
    """What to do with one child stream besides persisting it."""

    capture: bool = True
    echo_to: TextIO | None = None


@dataclass(slots=True)
class ProcessRequest:
    """Inputs required to supervise one agent process."""

    argv: list[str]
    cwd: Path
    env: dict[str, str]
    stdout_path: Path
    stderr_path: Path
    stdout_policy: StreamPolicy = field(default_factory=StreamPolicy)
    stderr_policy: StreamPolicy = field(default_factory=StreamPolicy)
    timeout_seconds: float = 0.0
    stdin_text: str | None = None


@dataclass(slots=True)
class ProcessResult:
    """Final status and captured output of one agent process."""

    exit_code: int
    timed_out: bool
    spawn_failed: bool
    stdout: bytes
    stderr: bytes
    elapsed_seconds: float


class EchoWriter:
    """Echo raw chunks to a text stream with newline framing.

    A newline is written before the first chunk, and one more after the last
    chunk when the echoed bytes did not already end with a newline.
    """

    def __init__(self, target: TextIO) -> None:
        self._target = target
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._wrote = False
        self._last_byte = b""

    def write(self, chunk: bytes) -> None:
        if not chunk:
            return
        if not self._wrote:
            self._target.write("\n")
        self._target.write(self._decoder.decode(chunk))
        self._target.flush()
        self._wrote = True
        self._last_byte = chunk[-1:]

    def finish(self) -> None:
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._target.write(tail)
        if self._wrote and self._last_byte != b"\n":
            self._target.write("\n")
        self._target.flush()


class _StreamDrain(threading.Thread):
    def __init__(
        self,
        *,
        name: str,
        source: IO[bytes],
        log_handle: IO[bytes],
        policy: StreamPolicy,
    ) -> None:
        super().__init__(name=name, daemon=True)
        self._source = source
        self._log_handle = log_handle
        self._capture = policy.capture
        self._echo = EchoWriter(policy.echo_to) if policy.echo_to is not None else None
        self.chunks: list[bytes] = []
        self.error: BaseException | None = None

    def run(self) -> None:
        try:
            while True:
                chunk = self._source.read1(_READ_CHUNK)  # type: ignore[attr-defined]
                if not chunk:
                    break
                self._log_handle.write(chunk)
                if self._capture:
                    self.chunks.append(chunk)
                if self._echo is not None:
                    self._echo.write(chunk)
            if self._echo is not None:
                self._echo.finish()
        except BaseException as error:  # noqa: BLE001
            self.error = error
        finally:
            self._source.close()


def run_process(request: ProcessRequest) -> ProcessResult:
    """Spawn ``request.argv`` and supervise it until exit and stream EOF."""

    request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
    request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
    start = time.monotonic()

    with (
        request.stdout_path.open("wb") as stdout_log,
        request.stderr_path.open("wb") as stderr_log,
    ):
        try:
            process = subprocess.Popen(  # noqa: S603
                request.argv,
                cwd=request.cwd,
                env=request.env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as error:
            logger.warning("cannot start command: %s (%s)", request.argv[0], error)
            message = f"{error}\n".encode()
            stderr_log.write(message)
            return ProcessResult(
                exit_code=_spawn_exit_code(error),
                timed_out=False,
                spawn_failed=True,
                stdout=b"",
                stderr=message,
                elapsed_seconds=time.monotonic() - start,
            )

        assert process.stdout is not None  # noqa: S101
        assert process.stderr is not None  # noqa: S101
        drains = [
            _StreamDrain(
                name="moleman-stdout",
                source=process.stdout,
                log_handle=stdout_log,
                policy=request.stdout_policy,
            ),
            _StreamDrain(
                name="moleman-stderr",
                source=process.stderr,
                log_handle=stderr_log,
                policy=request.stderr_policy,
            ),
        ]
        for drain in drains:
            drain.start()

        timed_out = threading.Event()
        timer: threading.Timer | None = None
        if request.timeout_seconds > 0:
            timer = threading.Timer(
                request.timeout_seconds,
                _expire,
                kwargs={"process": process, "timed_out": timed_out},
            )
            timer.daemon = True
            timer.start()

        try:
            _feed_stdin(process, request.stdin_text)
            returncode = process.wait()
        finally:
            if timer is not None:
                timer.cancel()
            for drain in drains:
                drain.join()

        for drain in drains:
            if drain.error is not None:
                raise drain.error

    if timed_out.is_set():
        exit_code = EXIT_TIMEOUT
    elif returncode < 0:
        exit_code = _SIGNAL_EXIT_BASE - returncode
    else:
        exit_code = returncode

    return ProcessResult(
        exit_code=exit_code,
        timed_out=timed_out.is_set(),
        spawn_failed=False,
        stdout=b"".join(drains[0].chunks),
        stderr=b"".join(drains[1].chunks),
        elapsed_seconds=time.monotonic() - start,
    )


def _feed_stdin(process: subprocess.Popen[bytes], text: str | None) -> None:
    stdin = process.stdin
    if stdin is None:
        return
    try:
        if text:
            stdin.write(text.encode("utf-8"))
    except BrokenPipeError:
        logger.debug("agent closed stdin before reading input pid=%s", process.pid)
    try:
        stdin.close()
    except BrokenPipeError:
        logger.debug("agent closed stdin before flush pid=%s", process.pid)


def _expire(*, process: subprocess.Popen[bytes], timed_out: threading.Event) -> None:
    if process.poll() is not None:
        return
    timed_out.set()
    logger.warning("node timeout reached, terminating pid=%s", process.pid)
    try:
        process.terminate()
    except OSError as error:
        logger.debug("terminate failed pid=%s: %s", process.pid, error)


def _spawn_exit_code(error: OSError) -> int:
    if isinstance(error, PermissionError):
        return EXIT_NOT_EXECUTABLE
    return EXIT_COMMAND_NOT_FOUND
