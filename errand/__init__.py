"""errand - a personal automation agent."""

__version__ = "0.3.0"
__logo__ = "◆"
