class UpyBitError(Exception):
    """
    Base exception for upybit operations.
    """
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f"{type(self).__name__}: {self.message}"


class DeviceNotFound(UpyBitError):
    """No micro:bit matched the vendor/product filter, or its port could not be opened."""


class FramerTimeout(UpyBitError):
    """The delimiter did not appear before the deadline."""


class HandshakeFailed(UpyBitError):
    """Raw REPL entry could not be confirmed, even after the fallback retry."""


class ExecutionTimeout(UpyBitError):
    """A result frame never completed. The session must re-enter raw mode."""


class ProtocolError(UpyBitError):
    """The device answered with something that is not a result frame."""


class SessionStateError(UpyBitError):
    """The session is not in a state that allows the requested operation."""


class LocalIoError(UpyBitError):
    """Reading or writing a file on the host failed."""


class RemoteError(UpyBitError):
    """
    The device reported an error for a batch.
    :param response: The Response carrying the device's stderr text.
    """
    def __init__(self, response):
        super().__init__(response.error.strip())
        self.response = response
