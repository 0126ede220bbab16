"""Utility functions for evogate."""

import os
import re
from datetime import UTC, datetime
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the evogate data directory.

    Respects EVOGATE_HOME environment variable; falls back to ~/.evogate.
    """
    evogate_home = os.environ.get("EVOGATE_HOME", "").strip()
    if evogate_home:
        return ensure_dir(Path(evogate_home).expanduser())
    return ensure_dir(Path.home() / ".evogate")


def get_var_path() -> Path:
    """Get the ephemeral state directory (~/.evogate/var)."""
    return ensure_dir(get_data_path() / "var")


def get_logs_path() -> Path:
    """Get the logs directory (~/.evogate/var/logs)."""
    return ensure_dir(get_var_path() / "logs")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def iso(ts: datetime | None) -> str | None:
    """Render an optional timestamp as ISO-8601."""
    return ts.isoformat() if ts is not None else None


_NON_DIGITS = re.compile(r"\D+")


def normalize_jid(number: str) -> str:
    """Turn a phone number or JID into a WhatsApp JID.

    Group JIDs (``@g.us``) pass through. Anything else is reduced to the
    digits of its user part (device suffixes like ``:12`` dropped) and
    suffixed with ``@s.whatsapp.net``. Returns an empty string when no
    digits remain.
    """
    value = (number or "").strip()
    if value.endswith("@g.us"):
        return value if value.removesuffix("@g.us") else ""
    user = value.split("@", 1)[0].split(":", 1)[0]
    digits = _NON_DIGITS.sub("", user)
    if not digits:
        return ""
    return f"{digits}@s.whatsapp.net"


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """Truncate a string to max length, adding suffix if truncated."""
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix
