"""Utility functions for errand."""

from errand.utils.helpers import ensure_dir, get_workspace_path, get_data_path

__all__ = ["ensure_dir", "get_workspace_path", "get_data_path"]
