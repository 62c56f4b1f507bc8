"""Chat channels module."""

from errand.channels.base import BaseChannel
from errand.channels.local import LocalChannel
from errand.channels.manager import ChannelManager

__all__ = ["BaseChannel", "ChannelManager", "LocalChannel"]
