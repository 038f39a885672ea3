"""Error types raised by the sharing components."""


class ShareError(Exception):
    pass


class NetworkError(ShareError):
    """Bind, connect, accept, read or write failure, including timeouts."""
    pass


class ProtocolError(ShareError):
    """Magic mismatch, malformed message or missing acknowledgement."""
    pass


class TransferRejected(ProtocolError):
    """Raised on the sending side when the receiver declines an offer."""

    def __init__(self, message: str = "Receiver rejected the transfer") -> None:
        super().__init__(message)


class DataError(ShareError):
    """Index or archive could not be read, or a note body is missing."""
    pass


class StateError(ShareError):
    """Unknown offer id, double claim, or a conflicting service state."""
    pass
