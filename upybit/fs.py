"""
File operations on the device, each expressed as a batch of generated code run through the raw REPL.
"""
import ast
import io
import logging
import os
from typing import Optional

from .errors import LocalIoError, ProtocolError, RemoteError
from .repl import RawReplSession, Response

logger = logging.getLogger(__name__)

GET_MARKER = '<<upybit:get>>'


def _read_chunks(local: str, chunk_size: int) -> list[bytes]:
    try:
        with open(local, 'rb') as f:
            return list(iter(lambda: f.read(chunk_size), b''))
    except OSError as e:
        raise LocalIoError(f"cannot read {local} ({e})")


def fs_put(session: RawReplSession, local: str, remote: Optional[str] = None,
           chunk_size: Optional[int] = None) -> str:
    """
    Upload a file to the connected device.
    The whole local file is read before anything is sent.
    :param local: The local file path to upload.
    :param remote: The remote file path on the device (defaults to the local file name).
    :param chunk_size: Bytes per generated write statement. Large chunks may exhaust device memory.
    :return: The remote path written.
    :raises LocalIoError: If the local file cannot be read.
    :raises RemoteError: If the device reports an error.
    """
    if remote is None:
        remote = os.path.basename(local)

    chunks = _read_chunks(local, chunk_size or io.DEFAULT_BUFFER_SIZE)

    commands = [f"f = open({remote!r}, 'wb')"]
    commands += [f"f.write({chunk!r})" for chunk in chunks]
    commands.append("f.close()")

    logger.debug("put %s -> %s (%d chunks)", local, remote, len(chunks))
    response = session.execute(commands)
    if response.error:
        raise RemoteError(response)
    return remote


def fs_get(session: RawReplSession, remote: str, local: Optional[str] = None) -> bytes:
    """
    Download a file from the connected device.
    The file travels as a single bytes literal, so it must fit in device memory.
    :param remote: The path to the file on the device.
    :param local: Where to save it. A directory receives the remote file name. None only returns the bytes.
    :return: The file contents.
    :raises RemoteError: If the device reports an error.
    :raises LocalIoError: If the local file cannot be written.
    """
    commands = [
        "import sys",
        f"f = open({remote!r}, 'rb')",
        f"sys.stdout.write({GET_MARKER!r})",
        "sys.stdout.write(repr(f.read()))",
        "f.close()",
    ]

    logger.debug("get %s -> %s", remote, local)
    response = session.execute(commands, strip_prefix=GET_MARKER)
    if response.error:
        raise RemoteError(response)

    try:
        data = ast.literal_eval(response.output.strip())
    except (ValueError, SyntaxError):
        raise ProtocolError(f"unexpected file payload: {response.output[:40]!r}")
    if not isinstance(data, bytes):
        raise ProtocolError(f"unexpected file payload: {response.output[:40]!r}")

    if local:
        if os.path.isdir(local):
            local = os.path.join(local, remote.rsplit('/', 1)[-1])
        try:
            with open(local, 'wb') as f:
                f.write(data)
        except OSError as e:
            raise LocalIoError(f"cannot write {local} ({e})")

    return data


def fs_rm(session: RawReplSession, remote: str, check: bool = False) -> Response:
    """
    Remove a file from the connected device.
    :param check: Raise RemoteError instead of returning a failed Response.
    """
    command = f"import os\nos.remove({remote!r})"
    response = session.execute([command])
    if check and response.error:
        raise RemoteError(response)
    return response


def fs_ls(session: RawReplSession, path: str = "") -> list[str]:
    """
    List a directory on the device, in the order the device reports.
    :param path: The directory to list (defaults to the working directory).
    """
    listdir = f"os.listdir({path!r})" if path else "os.listdir()"
    response = session.execute([f"import os\nprint({listdir})"])
    if response.error:
        raise RemoteError(response)

    try:
        names = ast.literal_eval(response.output.strip())
    except (ValueError, SyntaxError):
        raise ProtocolError(f"unexpected directory listing: {response.output[:40]!r}")
    if not isinstance(names, list):
        raise ProtocolError(f"unexpected directory listing: {response.output[:40]!r}")
    return names
