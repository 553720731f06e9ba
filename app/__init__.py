"""Application state for a voice session."""

from app.state import ConnectionState, ConnectionStateMachine, ErrorInfo

__all__ = ["ConnectionState", "ConnectionStateMachine", "ErrorInfo"]
