"""Human-readable activity log of assist operations.

Format example:
  2026-02-27 20:09:00 | 🚀 ANALYZE START: 1843 chars
  2026-02-27 20:09:03 | ⚠️ ANALYZE DEGRADED: AI_SERVICE → local
  2026-02-27 20:09:03 | ✅ ANALYZE END (3.1s)
  2026-02-27 20:10:12 | 📥 QUEUED status_update: c1 → addressed
"""

import os
from datetime import datetime

from scribe.config import ACTIVITY_LOG_FILE


def _timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _truncate(text: str, max_len: int = 300) -> str:
    """Truncate text with ellipsis if too long."""
    if len(text) > max_len:
        return text[:max_len] + "…"
    return text


def _write(line: str) -> None:
    os.makedirs(os.path.dirname(ACTIVITY_LOG_FILE), exist_ok=True)
    with open(ACTIVITY_LOG_FILE, "a", encoding="utf-8") as f:
        f.write(f"{_timestamp()} | {line}\n")


def log_operation_start(operation: str, detail: str = "") -> None:
    suffix = f": {_truncate(detail, 200)}" if detail else ""
    _write(f"🚀 {operation.upper()} START{suffix}")


def log_operation_end(
    operation: str, success: bool, duration: float, error: str | None = None
) -> None:
    """Log operation completion."""
    status = "✅" if success else "❌"
    msg = f"{status} {operation.upper()} END ({duration:.1f}s)"
    if error:
        msg += f" ERROR: {_truncate(error, 200)}"
    _write(msg)


def log_operation_degraded(operation: str, cause: str, fallback: str) -> None:
    _write(f"⚠️ {operation.upper()} DEGRADED: {cause} → {fallback}")


def log_operation_queued(kind: str, detail: str) -> None:
    _write(f"📥 QUEUED {kind}: {_truncate(detail)}")


def get_activity_log_tail(n: int = 50) -> str:
    """Get last n lines of activity log."""
    try:
        with open(ACTIVITY_LOG_FILE, encoding="utf-8") as f:
            lines = f.readlines()
    except FileNotFoundError:
        return "📝 Activity log is empty (no operations yet)"

    tail = lines[-n:] if len(lines) > n else lines
    header = f"📝 Last {len(tail)} of {len(lines)} entries:\n\n"
    return header + "".join(tail)
