"""Heartbeat service for periodic agent wake-ups."""

from errand.heartbeat.service import HEARTBEAT_OK_TOKEN, HEARTBEAT_PROMPT, HeartbeatService

__all__ = ["HeartbeatService", "HEARTBEAT_PROMPT", "HEARTBEAT_OK_TOKEN"]
