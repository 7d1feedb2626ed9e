"""sim-remote - interactive remote control for simulation engines.

A client sends a command (parameter overrides), the server runs the
engine once, waits for it to reach a new state and answers with Success
or Failure(ErrorReport).
"""

from .config import ClientConfig, IsolationPolicy, ServerConfig
from .dispatcher import CommandDispatcher
from .engine import Engine, EngineFactory, ProcessEngine
from .protocol import (
    PROTOCOL_VERSION,
    Command,
    ErrorReport,
    Failure,
    Fault,
    ProtocolVersion,
    Response,
    Success,
)
from .sdk import EngineClient
from .server import EngineServer, run_server
from .session import Session, SessionManager, SessionState

__version__ = "0.1.0"

__all__ = [
    "ClientConfig",
    "IsolationPolicy",
    "ServerConfig",
    "CommandDispatcher",
    "Engine",
    "EngineFactory",
    "ProcessEngine",
    "PROTOCOL_VERSION",
    "Command",
    "ErrorReport",
    "Failure",
    "Fault",
    "ProtocolVersion",
    "Response",
    "Success",
    "EngineClient",
    "EngineServer",
    "run_server",
    "Session",
    "SessionManager",
    "SessionState",
]
