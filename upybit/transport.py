import logging
from typing import Optional

import serial
from serial.tools import list_ports

from .errors import DeviceNotFound, UpyBitError

logger = logging.getLogger(__name__)

#--------------------------------------------------------------

MICROBIT_VID = 0x0D28
MICROBIT_PID = 0x0204
SERIAL_BAUD_RATE = 115200


def find_microbits() -> list[str]:
    """
    Return the port names of every connected micro:bit.
    """
    return [
        port.device
        for port in list_ports.comports()
        if port.vid == MICROBIT_VID and port.pid == MICROBIT_PID
    ]


def find_microbit() -> str:
    """
    Return the port name of the first connected micro:bit.
    :raises DeviceNotFound: If no device matches the vendor/product id.
    """
    ports = find_microbits()
    if not ports:
        raise DeviceNotFound("no micro:bit found (vid 0d28, pid 0204)")
    logger.debug("found micro:bit on %s", ports[0])
    return ports[0]


class SerialTransport:
    """
    Duplex byte stream over a serial port.
    Reads never block: they return whatever is already buffered, up to n bytes.
    """

    def __init__(self, port: str, baudrate: int = SERIAL_BAUD_RATE):
        """
        Open the serial port.
        :param port: The serial port to connect to.
        :param baudrate: The baud rate for the serial connection (default is 115200).
        :raises DeviceNotFound: If the serial port cannot be opened.
        """
        try:
            self.serial = serial.Serial(port, baudrate, timeout=1.0, write_timeout=1.0)
        except serial.SerialException as e:
            raise DeviceNotFound(f"failed to open {port} ({e})")
        except OSError:
            raise DeviceNotFound(f"failed to open {port} (device not found)")
        self.port = port

    @property
    def in_waiting(self) -> int:
        return self.serial.in_waiting

    def write(self, data: bytes) -> None:
        try:
            self.serial.write(data)
        except (serial.SerialException, OSError) as e:
            raise UpyBitError(f"serial write failed: {e}")

    def read(self, n: int = 1) -> bytes:
        """
        Read up to n bytes that have already arrived.
        :return: The bytes read, or b'' when nothing is waiting.
        """
        try:
            waiting = self.serial.in_waiting
            if not waiting:
                return b''
            return self.serial.read(min(n, waiting))
        except (serial.SerialException, OSError) as e:
            raise UpyBitError(f"serial read failed: {e}")

    def drain(self) -> None:
        """
        Block until every written byte has left the output buffer.
        """
        try:
            self.serial.flush()
        except (serial.SerialException, OSError) as e:
            raise UpyBitError(f"serial drain failed: {e}")

    def close(self) -> None:
        try:
            self.serial.close()
        except (serial.SerialException, OSError) as e:
            raise UpyBitError(f"serial close failed: {e}")


def open_transport(port: Optional[str] = None, baudrate: int = SERIAL_BAUD_RATE) -> SerialTransport:
    """
    Open a transport to the given port, or to the first micro:bit found.
    """
    if not port:
        port = find_microbit()
    return SerialTransport(port, baudrate)
