"""Child process supervision for the stdio protocol relay.

The relay sits between a consumer speaking line-delimited JSON-RPC on
stdin/stdout and a child that mixes protocol messages with diagnostic text
on its own stdout. Only protocol lines reach the relay's stdout; every other
line is tagged and written to stderr. The child's stderr is passed through
untouched.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Mapping, Sequence
from typing import BinaryIO

from nexus_bridge.errors import RelaySpawnError
from nexus_bridge.relay.protocol import LineBuffer, LineKind, classify_line

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
FORWARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def exit_code_for(returncode: int | None) -> int:
    """Shell-style exit code for a child return code."""
    if returncode is None:
        return 0
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class ProtocolRelay:
    """Run one child process and separate its protocol output from noise."""

    def __init__(
        self,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
        *,
        stdin: BinaryIO,
        stdout: BinaryIO,
        stderr: BinaryIO,
        forward_signals: bool = True,
        mode_var: str = "MCP_MODE",
        mode_value: str = "stdio",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.command = list(command)
        self.env = dict(env or {})
        self.stdin = stdin
        self.stdout = stdout
        self.stderr = stderr
        self.forward_signals = forward_signals
        self.mode_var = mode_var
        self.mode_value = mode_value
        self.chunk_size = chunk_size
        self.process: asyncio.subprocess.Process | None = None
        self.counts: dict[LineKind, int] = {kind: 0 for kind in LineKind}
        self._stdout_open = True
        self._installed_signals: list[signal.Signals] = []

    def child_env(self) -> dict[str, str]:
        return {**os.environ, self.mode_var: self.mode_value, **self.env}

    async def spawn(self) -> asyncio.subprocess.Process:
        if not self.command:
            raise RelaySpawnError("No command given for the relay child")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.child_env(),
            )
        except OSError as exc:
            raise RelaySpawnError(
                f"Failed to start {self.command[0]}: {exc}",
                context={"command": self.command},
            ) from exc
        logger.info("relay event=spawned program=%s pid=%s", self.command[0], self.process.pid)
        return self.process

    async def run(self) -> int:
        """Relay until the child exits, then return its mirrored exit code."""
        try:
            process = await self.spawn()
        except RelaySpawnError as exc:
            self._write(self.stderr, f"[RELAY] {exc.message}\n".encode())
            logger.error("relay event=spawn_failed program=%s", self.command[:1])
            return 1

        self._install_signal_handlers()
        stdin_task = asyncio.create_task(self._pump_stdin(process))
        try:
            await asyncio.gather(self._pump_stdout(process), self._pump_stderr(process))
            returncode = await process.wait()
        finally:
            stdin_task.cancel()
            await asyncio.gather(stdin_task, return_exceptions=True)
            self._remove_signal_handlers()

        code = exit_code_for(returncode)
        logger.info(
            "relay event=child_exited returncode=%s exit_code=%d protocol=%d "
            "non_protocol=%d non_parseable=%d",
            returncode,
            code,
            self.counts[LineKind.PROTOCOL],
            self.counts[LineKind.NON_PROTOCOL],
            self.counts[LineKind.NON_PARSEABLE],
        )
        return code

    def emit_line(self, line: str) -> None:
        verdict = classify_line(line)
        self.counts[verdict.kind] += 1
        if verdict.is_protocol:
            if self._stdout_open:
                self._stdout_open = self._write(self.stdout, (line + "\n").encode("utf-8"))
            return
        self._write(self.stderr, (verdict.diagnostic() + "\n").encode("utf-8"))

    async def _pump_stdout(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        buffer = LineBuffer()
        while True:
            chunk = await process.stdout.read(self.chunk_size)
            if not chunk:
                break
            for line in buffer.feed(chunk):
                self.emit_line(line)
        for line in buffer.flush():
            self.emit_line(line)

    async def _pump_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            chunk = await process.stderr.read(self.chunk_size)
            if not chunk:
                break
            self._write(self.stderr, chunk)

    async def _pump_stdin(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdin is not None
        loop = asyncio.get_running_loop()
        reader: asyncio.StreamReader | None = asyncio.StreamReader()
        transport: asyncio.BaseTransport | None = None
        try:
            transport, _ = await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), self.stdin
            )
        except (OSError, ValueError):
            # Regular files and in-memory buffers cannot be watched by the loop.
            reader = None

        try:
            while True:
                if reader is not None:
                    chunk = await reader.read(self.chunk_size)
                else:
                    chunk = await asyncio.to_thread(self.stdin.read, self.chunk_size)
                if not chunk:
                    break
                process.stdin.write(chunk)
                await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("relay event=child_stdin_closed")
            return
        finally:
            if transport is not None:
                transport.close()

        process.stdin.close()
        try:
            await process.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("relay event=child_stdin_closed")

    def _forward_signal(self, signum: signal.Signals) -> None:
        process = self.process
        if process is None or process.returncode is not None:
            return
        logger.info("relay event=signal_forwarded signal=%s pid=%s", signum.name, process.pid)
        try:
            process.send_signal(signum)
        except ProcessLookupError:
            logger.debug("relay event=signal_target_gone pid=%s", process.pid)

    def _install_signal_handlers(self) -> None:
        if not self.forward_signals:
            return
        loop = asyncio.get_running_loop()
        for signum in FORWARDED_SIGNALS:
            try:
                loop.add_signal_handler(signum, self._forward_signal, signum)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("relay event=signal_handler_unavailable signal=%s", signum.name)
                continue
            self._installed_signals.append(signum)

    def _remove_signal_handlers(self) -> None:
        if not self._installed_signals:
            return
        loop = asyncio.get_running_loop()
        for signum in self._installed_signals:
            loop.remove_signal_handler(signum)
        self._installed_signals = []

    @staticmethod
    def _write(stream: BinaryIO, data: bytes) -> bool:
        try:
            stream.write(data)
            stream.flush()
        except (BrokenPipeError, ValueError) as exc:
            logger.debug("relay event=output_closed reason=%s", exc)
            return False
        return True
