"""Utility helpers."""

from evogate.utils.helpers import ensure_dir, get_data_path, get_logs_path, utc_now

__all__ = ["ensure_dir", "get_data_path", "get_logs_path", "utc_now"]
