from .manager import ConnectionState, SessionLifecycleManager

__all__ = ["ConnectionState", "SessionLifecycleManager"]
