__version__ = "0.1.0"

from .errors import (
    DeviceNotFound,
    ExecutionTimeout,
    FramerTimeout,
    HandshakeFailed,
    LocalIoError,
    ProtocolError,
    RemoteError,
    SessionStateError,
    UpyBitError,
)
from .fs import fs_get, fs_ls, fs_put, fs_rm
from .repl import Framer, RawReplSession, Response, State
from .transport import SerialTransport, find_microbit, find_microbits, open_transport
