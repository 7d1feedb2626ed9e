"""Transport abstraction base class.

A Transport is the server's view of one peer: whole messages in, whole
messages out. Message boundaries belong to the transport, so the
dispatcher never sees partial frames.
"""

from abc import ABC, abstractmethod


class Transport(ABC):
    """Bidirectional message channel to exactly one remote peer."""

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Send one message.

        Raises:
            ConnectionClosed: If the channel is closed or the peer is unreachable
        """
        ...

    @abstractmethod
    async def receive(self) -> bytes:
        """Wait for the next message.

        Raises:
            ConnectionClosed: If the channel is closed before or while waiting
            ReceiveTimeout: If a receive timeout is configured and expires
        """
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the channel. Safe to call more than once."""
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once close() has been called."""
        ...
