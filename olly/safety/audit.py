"""JSONL audit log of gated tool calls, with secret redaction."""

import json
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from olly.logging import get_logger

log = get_logger(__name__)

_MAX_OUTPUT_CHARS = 1000

_REDACT_PATTERNS = [
    re.compile(r"sk-[a-zA-Z0-9]{20,}"),
    re.compile(r"ghp_[a-zA-Z0-9]{36,}"),
    re.compile(r"gho_[a-zA-Z0-9]{36,}"),
    re.compile(r"github_pat_[a-zA-Z0-9_]{22,}"),
    re.compile(r"xox[baprs]-[a-zA-Z0-9-]+"),
    re.compile(r"eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*"),
    re.compile(r"AKIA[0-9A-Z]{16}"),
    re.compile(r"[a-zA-Z0-9+]{40,}={0,2}"),
    re.compile(r"password['\":\s]*['\"][^'\"]+['\"]", re.IGNORECASE),
    re.compile(r"secret['\":\s]*['\"][^'\"]+['\"]", re.IGNORECASE),
    re.compile(r"token['\":\s]*['\"][^'\"]+['\"]", re.IGNORECASE),
    re.compile(r"api[_-]?key['\":\s]*['\"][^'\"]+['\"]", re.IGNORECASE),
]

REDACTED = "[REDACTED]"


def redact_string(text: str) -> str:
    for pattern in _REDACT_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


def redact(value: Any) -> Any:
    """Recursively redact secrets in strings inside dicts/lists."""
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        return {key: redact(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def _truncate(text: str, limit: int = _MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"... [truncated, {len(text)} total chars]"


class AuditLog:
    """Append-only audit trail for one session."""

    def __init__(self, path: Path | str | None, enabled: bool = True, session_id: str = ""):
        self.path = Path(path).expanduser() if path else None
        self.enabled = bool(enabled and self.path is not None)
        self.session_id = session_id

    def record(
        self,
        tool: str,
        args: dict[str, Any],
        result: str,
        reason: str | None = None,
        duration_ms: int | None = None,
        output: str | None = None,
        error: str | None = None,
    ) -> dict[str, Any] | None:
        """Append one entry. ``result`` is allowed|denied|confirmed|rejected|executed."""
        if not self.enabled or self.path is None:
            return None

        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "session_id": self.session_id,
            "tool": tool,
            "args": redact(args),
            "result": result,
        }
        if reason:
            entry["reason"] = redact_string(reason)
        if duration_ms is not None:
            entry["duration_ms"] = duration_ms
        if output:
            entry["output"] = _truncate(redact_string(output))
        if error:
            entry["error"] = redact_string(error)

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            log.warning("Failed to write audit log", path=str(self.path), error=str(e))
        return entry

    def read_entries(self) -> list[dict[str, Any]]:
        """Load all entries, oldest first."""
        if self.path is None or not self.path.exists():
            return []
        entries = []
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(json.loads(line))
        return entries
