"""Small helpers shared by commands and the deploy engine."""

import hashlib
import os
import re
from datetime import timedelta
from pathlib import Path

_DURATION_PART = re.compile(r"(\d+)([smhdw])")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}

# Characters that are unsafe in record and lock file names
_UNSAFE_FILENAME = re.compile(r'[<>:"/\\|?*\s]')


def parse_duration(text: str) -> timedelta:
    """Parse ``30s``, ``5m``, ``7d`` or combinations such as ``1h30m``.

    Raises:
        ValueError: If the text is empty or contains anything else
    """
    compact = (text or "").strip().lower()
    if not compact or _DURATION_PART.sub("", compact):
        raise ValueError(f"Invalid duration format: {text!r} (expected e.g. 30s, 15m, 2h, 7d, 1h30m)")

    return sum(
        (timedelta(**{_DURATION_UNITS[unit]: int(amount)}) for amount, unit in _DURATION_PART.findall(compact)),
        timedelta(),
    )


def get_state_dir(configured: str | Path | None = None) -> Path:
    """Directory for records and locks; ``DEPLOYCTL_STATE_DIR`` wins over config."""
    state_dir = Path(os.environ.get("DEPLOYCTL_STATE_DIR") or configured or "~/.deployctl").expanduser()
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def sanitize_filename(name: str) -> str:
    """Target name made safe to use as a file name.

    Names that had to be changed get a short digest of the original, so
    ``a/b`` and ``a_b`` never share a record log or lock.
    """
    safe = _UNSAFE_FILENAME.sub("_", name).strip(". ") or "unnamed"
    if safe == name:
        return safe
    return f"{safe}-{hashlib.sha256(name.encode()).hexdigest()[:8]}"


def truncate_string(text: str, max_length: int = 50, suffix: str = "...") -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - len(suffix)] + suffix
