"""Detect an agent repeating the same tool call without making progress."""

import json
from collections import deque
from typing import Any

from olly.llm import ToolCall


def canonical_signature(name: str, arguments: dict[str, Any]) -> str:
    """Key-order independent signature of a tool call."""
    return f"{name}:{json.dumps(arguments, sort_keys=True, default=str, separators=(',', ':'))}"


class LoopDetector:
    """Rolling window of recent call signatures for one run.

    ``observe`` records a call and returns how many times its signature now
    appears in the window. A count at or above ``threshold`` means the run is
    looping.
    """

    def __init__(self, threshold: int = 3, window: int = 5):
        self.threshold = max(2, int(threshold))
        self.window = max(self.threshold, int(window))
        self._recent: deque[str] = deque(maxlen=self.window)

    def observe(self, call: ToolCall) -> int:
        signature = canonical_signature(call.name, call.arguments)
        self._recent.append(signature)
        return sum(1 for item in self._recent if item == signature)

    def is_loop(self, attempts: int) -> bool:
        return attempts >= self.threshold

    def reset(self) -> None:
        self._recent.clear()
