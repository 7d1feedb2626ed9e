"""Server and client configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

DEFAULT_ADDRESS = "127.0.0.1"
DEFAULT_PORT = 5555


class IsolationPolicy(str, Enum):
    """What to do when a second client arrives while a session is active."""

    REJECT = "reject"  # Refuse the newcomer, the engine stays with the first session
    ISOLATE = "isolate"  # Give the newcomer its own engine instance


@dataclass
class ServerConfig:
    """Configuration for the engine server."""

    address: str = DEFAULT_ADDRESS
    port: int = DEFAULT_PORT  # 0 binds an ephemeral port
    verbose: bool = False  # Echo fault text to the diagnostic sink on failure

    # Timeouts (seconds, None = wait forever)
    receive_timeout: float | None = None
    state_change_timeout: float | None = None

    # Multi-client handling
    isolation: IsolationPolicy = IsolationPolicy.REJECT
    max_sessions: int = 8

    # Overrides prepended to every command (e.g. synchroniser address)
    default_overrides: list[str] = field(default_factory=list)

    @property
    def endpoint(self) -> str:
        """ZeroMQ endpoint to bind."""
        port = "*" if self.port == 0 else str(self.port)
        return f"tcp://{self.address}:{port}"


@dataclass
class ClientConfig:
    """Configuration for the SDK client."""

    address: str = DEFAULT_ADDRESS
    port: int = DEFAULT_PORT
    connect_timeout: float = 5.0  # Handshake must complete within this
    receive_timeout: float | None = None  # Per-command wait; None = engine runs may be long
    client_name: str | None = None

    @property
    def endpoint(self) -> str:
        return f"tcp://{self.address}:{self.port}"
