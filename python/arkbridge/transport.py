"""Sidecar process supervision and the outbound comm channel.

Responsibilities:
    * Own the sidecar subprocess: at most one per connection file.
    * Pump its stdout through the line framer on a reader thread.
    * Re-log its structured stderr output.
    * Serialise outbound commands so each one lands on stdin as one line.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from typing import Any, BinaryIO, Callable, Dict, List, Optional

from .config import BridgeConfig
from .framer import LineFramer
from .logparse import format_sidecar_rust_log, parse_sidecar_log
from .protocol import (
    EventRecord,
    comm_close_command,
    comm_msg_command,
    comm_open_command,
    encode_command,
    log_reload_command,
)


logger = logging.getLogger(__name__)
sidecar_logger = logging.getLogger("arkbridge.sidecar")

RecordsHandler = Callable[[List[EventRecord]], None]
ExitHandler = Callable[[Optional[int], bool], None]


class TransportError(RuntimeError):
    """Raised when the sidecar cannot be reached or has gone away."""


class CommChannel:
    """Writes outbound commands to the sidecar's stdin."""

    def __init__(self, writer_source: Callable[[], Optional[BinaryIO]]) -> None:
        self._writer_source = writer_source
        self._write_lock = threading.Lock()
        self._on_fault: List[Callable[[TransportError], None]] = []

    def register_on_fault(self, callback: Callable[[TransportError], None]) -> None:
        self._on_fault.append(callback)

    def send(self, command: Dict[str, Any]) -> None:
        data = encode_command(command)
        with self._write_lock:
            writer = self._writer_source()
            if writer is None:
                raise TransportError(f"sidecar not running; cannot send {command['command']}")
            try:
                writer.write(data)
                writer.flush()
            except (OSError, ValueError) as exc:
                error = TransportError(f"write to sidecar failed: {exc}")
                failed = True
            else:
                failed = False
        if failed:
            logger.error("%s", error)
            for callback in list(self._on_fault):
                try:
                    callback(error)
                except Exception:
                    logger.exception("transport fault callback failed")
            raise error

    def comm_open(self, comm_id: str, target_name: str, data: Any = None) -> None:
        self.send(comm_open_command(comm_id, target_name, data))

    def comm_msg(self, comm_id: str, data: Any) -> None:
        self.send(comm_msg_command(comm_id, data))

    def comm_close(self, comm_id: str, data: Any = None) -> None:
        self.send(comm_close_command(comm_id, data))

    def reload_log_level(self, level: str) -> None:
        self.send(log_reload_command(level))
        logger.debug("sent log reload command (level: %s)", level)


class ProcessSupervisor:
    """Owns the sidecar subprocess lifetime."""

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        on_records: Optional[RecordsHandler] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.config = config or BridgeConfig()
        self._on_records = on_records
        self._popen = popen
        self._lock = threading.RLock()
        self._proc: Optional[subprocess.Popen] = None
        self._connection_file: Optional[str] = None
        self._state = "stopped"
        self._reader_thread: Optional[threading.Thread] = None
        self._stderr_thread: Optional[threading.Thread] = None
        self._on_exit: List[ExitHandler] = []
        self.last_exit_code: Optional[int] = None

    #
    # Lifecycle
    #
    @property
    def state(self) -> str:
        return self._state

    @property
    def connection_file(self) -> Optional[str]:
        return self._connection_file

    @property
    def pid(self) -> Optional[int]:
        proc = self._proc
        return proc.pid if proc else None

    @property
    def is_running(self) -> bool:
        proc = self._proc
        return proc is not None and proc.poll() is None

    def stdin(self) -> Optional[BinaryIO]:
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return None
        return proc.stdin

    def register_on_exit(self, callback: ExitHandler) -> None:
        """``callback(exit_code, stopped_by_host)`` after the process goes away."""
        self._on_exit.append(callback)

    def attach(self, connection_file: str) -> None:
        with self._lock:
            if self._connection_file == connection_file and self.is_running:
                return
            self.stop()
            self._connection_file = connection_file
            self._start(connection_file)

    def stop(self) -> None:
        with self._lock:
            proc = self._proc
            self._proc = None
            self._connection_file = None
            if proc is None:
                return
            if proc.poll() is None:
                try:
                    proc.kill()
                except OSError as exc:
                    logger.debug("kill failed: %s", exc)
            try:
                code = proc.wait(timeout=2.0)
            except subprocess.TimeoutExpired:
                code = None
            self._close_pipes(proc)
            self._state = "stopped"
            self.last_exit_code = code
        logger.info("sidecar stopped (pid=%s)", proc.pid)
        self._fire_exit(code, True)

    def build_command(self, connection_file: str) -> List[str]:
        return [
            self.config.sidecar_path,
            *self.config.sidecar_args,
            "--connection-file",
            connection_file,
            "--timeout-ms",
            str(self.config.timeout_ms),
        ]

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        rust_log = format_sidecar_rust_log(self.config.ark_log_level)
        if rust_log:
            env["RUST_LOG"] = rust_log
            logger.debug("sidecar log level set to %s", rust_log)
        return env

    #
    # Internal helpers
    #
    def _start(self, connection_file: str) -> None:
        argv = self.build_command(connection_file)
        try:
            proc = self._popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.build_env(),
            )
        except OSError as exc:
            self._connection_file = None
            self._state = "stopped"
            logger.error("failed to spawn sidecar %s: %s", argv[0], exc)
            raise TransportError(f"failed to spawn sidecar: {exc}") from exc
        self._proc = proc
        self._state = "running"
        framer = LineFramer(debug=self.config.debug)
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            name="arkbridge-sidecar-stdout",
            args=(proc, framer),
            daemon=True,
        )
        self._stderr_thread = threading.Thread(
            target=self._stderr_loop,
            name="arkbridge-sidecar-stderr",
            args=(proc,),
            daemon=True,
        )
        self._reader_thread.start()
        self._stderr_thread.start()
        logger.info("sidecar started (pid=%s, connection=%s)", proc.pid, connection_file)

    def _read_chunk(self, stream: BinaryIO) -> bytes:
        read1 = getattr(stream, "read1", None)
        if read1 is not None:
            return read1(self.config.read_chunk_size)
        return stream.read(self.config.read_chunk_size)

    def _reader_loop(self, proc: subprocess.Popen, framer: LineFramer) -> None:
        stream = proc.stdout
        try:
            while stream is not None:
                try:
                    chunk = self._read_chunk(stream)
                except (OSError, ValueError):
                    break
                if not chunk:
                    break
                self._deliver(framer.feed(chunk))
            self._deliver(framer.flush())
        finally:
            self._handle_exit(proc)

    def _deliver(self, records: List[EventRecord]) -> None:
        handler = self._on_records
        if not records or handler is None:
            return
        try:
            handler(records)
        except Exception:
            logger.exception("sidecar record handler failed")

    def _stderr_loop(self, proc: subprocess.Popen) -> None:
        stream = proc.stderr
        if stream is None:
            return
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                parsed = parse_sidecar_log(line)
                if parsed is None:
                    sidecar_logger.info("%s", line)
                else:
                    sidecar_logger.log(parsed.py_level, "%s", parsed.message)
        except (OSError, ValueError):
            pass

    def _handle_exit(self, proc: subprocess.Popen) -> None:
        with self._lock:
            if proc is not self._proc:
                # stop() already reported this process.
                return
            try:
                code = proc.wait(timeout=5.0)
            except subprocess.TimeoutExpired:
                code = proc.poll()
            self._proc = None
            self._connection_file = None
            self._state = "exited"
            self.last_exit_code = code
            self._close_pipes(proc)
        if code is not None and code < 0:
            logger.warning("sidecar exited with signal %s", -code)
        elif code == 0:
            logger.info("sidecar exited with code 0")
        else:
            logger.warning("sidecar exited with code %s", code)
        self._fire_exit(code, False)

    def _fire_exit(self, code: Optional[int], stopped_by_host: bool) -> None:
        for callback in list(self._on_exit):
            try:
                callback(code, stopped_by_host)
            except Exception:
                logger.exception("sidecar exit callback failed")

    @staticmethod
    def _close_pipes(proc: subprocess.Popen) -> None:
        if proc.stdin:
            try:
                proc.stdin.close()
            except OSError:
                pass
