from .session_monitor import DEFAULT_POLL_INTERVAL, SessionMonitor

__all__ = ['DEFAULT_POLL_INTERVAL', 'SessionMonitor']
