import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from .errors import (
    ExecutionTimeout,
    FramerTimeout,
    HandshakeFailed,
    ProtocolError,
    SessionStateError,
)

logger = logging.getLogger(__name__)

#--------------------------------------------------------------

CTRL_A = b'\x01'    # enter raw REPL
CTRL_B = b'\x02'    # exit raw REPL
CTRL_C = b'\x03'    # interrupt
CTRL_D = b'\x04'    # end of transmission / soft reset

RAW_REPL_BANNER = b'raw REPL; CTRL-B to exit\r\n>'
SOFT_REBOOT_BANNER = b'soft reboot\r\n'
OK_MARKER = b'OK'
RESULT_TERMINATOR = CTRL_D + b'>'

DEFAULT_TIMEOUT = 1.0
DEFAULT_PAUSE = 0.01


class Framer:
    """
    Incremental reader that waits for a delimiter at the tail of the received bytes.
    """

    def __init__(self, transport, timeout: float = DEFAULT_TIMEOUT, check_interval: float = 0.01):
        self.transport = transport
        self.timeout = timeout
        self.check_interval = check_interval

    def read_until(self, ending: bytes, timeout: Optional[float] = None) -> bytes:
        """
        Read from the transport until the data ends with the given delimiter.
        :param ending: The byte sequence that indicates the end of the data.
        :param timeout: Maximum time to wait in seconds (defaults to the framer's timeout).
        :return: Everything read, including the delimiter.
        :raises FramerTimeout: If the delimiter does not arrive in time.
        """
        if timeout is None:
            timeout = self.timeout

        data = b''
        deadline = time.monotonic() + timeout

        while not data.endswith(ending):
            if time.monotonic() >= deadline:
                raise FramerTimeout(f"timeout waiting for {ending!r} (received {len(data)} bytes)")

            new_data = self.transport.read(1)
            if new_data:
                data += new_data
            else:
                time.sleep(self.check_interval)

        return data


class State(enum.Enum):
    IDLE = "idle"
    ENTERING_RAW = "entering_raw"
    RAW_READY = "raw_ready"
    EXECUTING = "executing"
    EXITING_RAW = "exiting_raw"
    BROKEN = "broken"


@dataclass
class Response:
    output: str
    error: Optional[str] = None


def parse_frame(frame: bytes) -> tuple[bytes, bytes]:
    """
    Split a result frame (OK<stdout>\\x04<stderr>\\x04>) into its stdout and stderr parts.
    :raises ProtocolError: If the frame is malformed.
    """
    if not frame.startswith(OK_MARKER) or not frame.endswith(RESULT_TERMINATOR):
        raise ProtocolError(f"could not execute command (response: {frame!r})")

    parts = frame[len(OK_MARKER):-len(RESULT_TERMINATOR)].split(CTRL_D)
    if len(parts) != 2:
        raise ProtocolError(f"malformed result frame: {frame!r}")
    return parts[0], parts[1]


class RawReplSession:
    """
    A raw REPL session with a MicroPython device.
    The session owns its transport exclusively; only one batch may be in flight at a time.
    """

    def __init__(self, transport, timeout: float = DEFAULT_TIMEOUT, pause: float = DEFAULT_PAUSE):
        """
        :param transport: Object providing write(bytes), read(n) and drain().
        :param timeout: Deadline in seconds for every banner and result frame wait.
        :param pause: Delay in seconds between interrupts and between fragments.
        """
        self.transport = transport
        self.framer = Framer(transport, timeout)
        self.pause = pause
        self.state = State.IDLE
        self._lock = threading.RLock()

    def __enter__(self):
        self.enter_raw()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def _wait_banner(self, banner: bytes) -> bytes:
        try:
            return self.framer.read_until(banner)
        except FramerTimeout as e:
            self.state = State.BROKEN
            raise HandshakeFailed(f"could not enter raw repl ({e.message})")

    def enter_raw(self) -> None:
        """
        Put the device into raw REPL mode, interrupting any running program and soft resetting it.
        :raises HandshakeFailed: If the raw REPL banner cannot be confirmed.
        """
        with self._lock:
            if self.state is State.BROKEN:
                raise SessionStateError("session is broken, reconnect to the device")

            logger.debug("entering raw REPL")
            self.state = State.ENTERING_RAW
            try:
                self._handshake()
            except HandshakeFailed:
                raise
            except BaseException:
                self.state = State.IDLE
                raise

            self.state = State.RAW_READY
            logger.debug("raw REPL ready")

    def _handshake(self) -> None:
        self.transport.write(CTRL_B)
        for _ in range(3):
            self.transport.write(CTRL_C)
            time.sleep(self.pause)
        self.transport.drain()

        self.transport.write(CTRL_A)
        self._wait_banner(RAW_REPL_BANNER)

        self.transport.write(CTRL_D)
        self._wait_banner(SOFT_REBOOT_BANNER)

        # Some firmware stays silent after the soft reboot until asked again.
        try:
            self.framer.read_until(RAW_REPL_BANNER)
        except FramerTimeout:
            logger.debug("no raw REPL banner after soft reboot, asking again")
            self.transport.write(CTRL_A)
            self._wait_banner(RAW_REPL_BANNER)

        self.transport.drain()

    def exit_raw(self) -> None:
        """
        Leave raw REPL mode. The friendly REPL prompt is not awaited.
        """
        with self._lock:
            if self.state is not State.RAW_READY:
                raise SessionStateError(f"cannot leave raw repl from state {self.state.value}")
            self.state = State.EXITING_RAW
            self.transport.write(CTRL_B)
            self.state = State.IDLE
            logger.debug("left raw REPL")

    def execute(self, commands: list[str], strip_prefix: Optional[str] = None,
                timeout: Optional[float] = None) -> Response:
        """
        Execute a batch of code fragments on the device.
        :param commands: Fragments, each compiled and run on its own.
        :param strip_prefix: Marker whose first occurrence, and everything before it, is removed from the output.
        :param timeout: Deadline for each result frame (defaults to the session timeout).
        :return: The Response. Device errors are returned in Response.error, never raised.
        :raises ExecutionTimeout: If a result frame does not complete in time.
        """
        with self._lock:
            if self.state is not State.RAW_READY:
                raise SessionStateError(f"cannot execute from state {self.state.value}")
            self.state = State.EXECUTING

            try:
                for command in commands:
                    self.transport.write(command.encode('utf-8'))
                    self.transport.write(CTRL_D)
                    self.transport.drain()
                    time.sleep(self.pause)

                out = b''
                err = b''
                for i in range(len(commands)):
                    try:
                        frame = self.framer.read_until(RESULT_TERMINATOR, timeout)
                    except FramerTimeout as e:
                        raise ExecutionTimeout(f"fragment {i} did not complete ({e.message})")

                    stdout, stderr = parse_frame(frame)
                    if err:
                        logger.debug("discarding result of fragment %d after error", i)
                        continue
                    out += stdout
                    err = stderr
            except BaseException:
                self.state = State.IDLE
                raise

            self.state = State.RAW_READY

        output = out.decode('utf-8', errors='replace')
        error = err.decode('utf-8', errors='replace') if err else None

        if strip_prefix is not None and error is None:
            pos = output.find(strip_prefix)
            if pos < 0:
                raise ProtocolError(f"marker {strip_prefix!r} not found in output")
            output = output[pos + len(strip_prefix):]

        return Response(output, error)

    def close(self) -> None:
        """
        Leave raw mode and close the transport.
        The exit byte is sent in every state: a failed handshake or batch can leave the device in raw mode.
        """
        with self._lock:
            if self.transport is None:
                return
            try:
                self.transport.write(CTRL_B)
            finally:
                self.transport.close()
                self.transport = None
                if self.state is not State.BROKEN:
                    self.state = State.IDLE
            logger.debug("session closed")
