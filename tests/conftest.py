"""Simulated micro:bit that speaks the raw REPL over an in-memory transport."""

import builtins
import io
import types

import pytest

from upybit.repl import RawReplSession

RAW_BANNER = b"raw REPL; CTRL-B to exit\r\n>"
FRIENDLY_BANNER = (
    b"\r\nMicroPython v1.9.2 on 2017-09-01; micro:bit v1.0.1 with nRF51822\r\n"
    b"Type \"help()\" for more information.\r\n>>> "
)


class DeviceStdout:
    """Captures device output, translating LF to CRLF like the UART console."""

    def __init__(self):
        self._parts = []

    def write(self, s):
        if isinstance(s, bytes):
            s = s.decode()
        self._parts.append(s.replace("\n", "\r\n"))
        return len(s)

    def getvalue(self) -> str:
        return "".join(self._parts)


class DeviceFile:
    def __init__(self, files, path, mode):
        self._files = files
        self._path = path
        if "w" in mode:
            files[path] = b""
            self._buf = None
        else:
            self._buf = io.BytesIO(files[path])

    def read(self, *args):
        return self._buf.read(*args)

    def write(self, data):
        self._files[self._path] += bytes(data)
        return len(data)

    def close(self):
        pass


class FakeMicrobit:
    """
    Transport double that executes raw REPL code against a flat in-memory filesystem.

    :param reboot_banner: Emit the raw REPL banner after a soft reboot (some firmware does not).
    :param hang_after_reboot: Stop answering once a soft reboot has happened.
    :param silent: Never answer at all.
    """

    port = "/dev/ttyFAKE0"

    def __init__(self, files=None, reboot_banner=True, hang_after_reboot=False, silent=False):
        self.files = dict(files or {})
        self.reboot_banner = reboot_banner
        self.hang_after_reboot = hang_after_reboot
        self.silent = silent
        self.raw = False
        self.code = b""
        self.namespace = {}
        self.modules = {
            "os": types.SimpleNamespace(listdir=self._listdir, remove=self._remove),
            "sys": types.SimpleNamespace(stdout=None),
        }
        self.outbox = bytearray()
        self.written = bytearray()
        self.drains = 0
        self.closed = False

    # transport interface

    def write(self, data: bytes) -> None:
        self.written += data
        for b in data:
            self._feed(b)

    def read(self, n: int = 1) -> bytes:
        data = bytes(self.outbox[:n])
        del self.outbox[:n]
        return data

    @property
    def in_waiting(self) -> int:
        return len(self.outbox)

    def drain(self) -> None:
        self.drains += 1

    def close(self) -> None:
        self.closed = True

    # device behaviour

    def _send(self, data: bytes) -> None:
        if not self.silent:
            self.outbox += data

    def _feed(self, b: int) -> None:
        if b == 0x01:
            self.raw = True
            self.code = b""
            self._send(b"\r\n" + RAW_BANNER)
        elif b == 0x02:
            self.raw = False
            self.code = b""
            self._send(FRIENDLY_BANNER)
        elif b == 0x03:
            if self.raw:
                self.code = b""
            else:
                self._send(b"\r\n>>> ")
        elif b == 0x04:
            if not self.raw:
                self._send(b"MPY: soft reboot\r\n" + FRIENDLY_BANNER)
            elif not self.code:
                self._soft_reboot()
            else:
                code, self.code = self.code, b""
                self._send(b"OK")
                self._run(code)
        elif self.raw:
            self.code += bytes([b])

    def _soft_reboot(self) -> None:
        self.namespace = {}
        self._send(b"OK\r\nMPY: soft reboot\r\n")
        if self.hang_after_reboot:
            self.silent = True
        if self.reboot_banner:
            self._send(RAW_BANNER)

    def _run(self, code: bytes) -> None:
        out = DeviceStdout()
        # Module objects outlive a single run; only the console behind sys.stdout is per run.
        self.modules["sys"].stdout = out

        def _import(name, *args, **kwargs):
            if name in self.modules:
                return self.modules[name]
            raise ImportError(f"no module named '{name}'")

        def _print(*args, sep=" ", end="\n"):
            out.write(sep.join(str(a) for a in args) + end)

        device_builtins = dict(vars(builtins))
        device_builtins.update(__import__=_import, open=self._open, print=_print)
        self.namespace["__builtins__"] = device_builtins

        err = ""
        try:
            exec(compile(code.decode(), "<stdin>", "exec"), self.namespace)
        except Exception as e:
            # MicroPython has no OSError subclasses such as FileNotFoundError.
            name = "OSError" if isinstance(e, OSError) else type(e).__name__
            err = (
                "Traceback (most recent call last):\r\n"
                '  File "<stdin>", line 1, in <module>\r\n'
                f"{name}: {e}\r\n"
            )
        self._send(out.getvalue().encode() + b"\x04" + err.encode() + b"\x04>")

    def _listdir(self, path=""):
        if path not in ("", "/", "."):
            raise OSError(2, "ENOENT")
        return list(self.files)

    def _remove(self, path):
        if path not in self.files:
            raise OSError(2, "ENOENT")
        del self.files[path]

    def _open(self, path, mode="r"):
        if "/" in path:
            raise OSError(2, "ENOENT")
        if "w" not in mode and path not in self.files:
            raise OSError(2, "ENOENT")
        return DeviceFile(self.files, path, mode)


@pytest.fixture
def device():
    return FakeMicrobit()


@pytest.fixture
def session(device):
    s = RawReplSession(device, timeout=0.2, pause=0)
    s.enter_raw()
    yield s
    s.close()
