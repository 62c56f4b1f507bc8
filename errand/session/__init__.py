"""Session management module."""

from errand.session.manager import Session, SessionManager, SessionSnapshot, Turn

__all__ = ["SessionManager", "Session", "SessionSnapshot", "Turn"]
