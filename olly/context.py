"""Context window accounting and history compaction."""

import json
import math
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Sequence

from olly.config import ContextConfig, get_config
from olly.instructions import InstructionLoader
from olly.llm import LLMProvider, Message
from olly.logging import get_logger

log = get_logger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary: "
SUMMARY_SUFFIX = "]"

MESSAGE_OVERHEAD_TOKENS = 4
TOOL_CALL_OVERHEAD_TOKENS = 10
CODE_CHARS_PER_TOKEN = 3.0
JSON_CHARS_PER_TOKEN = 3.5

_CODE_MARKERS = ("```", "def ", "class ", "import ", "function ", "const ")
ROLES = ("system", "user", "assistant", "tool")


class CompactionLevel(IntEnum):
    NONE = 0
    LIGHT = 1
    MODERATE = 2
    AGGRESSIVE = 3


@dataclass(frozen=True)
class ContextStats:
    total_tokens: int
    max_tokens: int
    usage_percent: float
    by_role: dict[str, int] = field(default_factory=dict)
    is_near_limit: bool = False
    is_critical: bool = False


@dataclass(frozen=True)
class CompactionResult:
    messages: tuple[Message, ...]
    original_count: int
    compacted_count: int
    tokens_before: int
    tokens_after: int
    level: CompactionLevel = CompactionLevel.NONE
    summary: str | None = None

    @property
    def changed(self) -> bool:
        return self.compacted_count < self.original_count


def is_summary_message(message: Message) -> bool:
    return message.role == "system" and message.content.startswith(SUMMARY_PREFIX)


def summary_message(text: str) -> Message:
    return Message(role="system", content=f"{SUMMARY_PREFIX}{text}{SUMMARY_SUFFIX}")


def _summary_body(message: Message) -> str:
    body = message.content[len(SUMMARY_PREFIX):]
    return body[: -len(SUMMARY_SUFFIX)] if body.endswith(SUMMARY_SUFFIX) else body


class ContextManager:
    """Token accounting and compaction for a message history.

    Token counts are per-message estimates summed per role, so they can be
    recomputed for any slice of history without calling the model.
    """

    def __init__(
        self,
        config: ContextConfig | None = None,
        instructions: InstructionLoader | None = None,
        token_counter: Callable[[str], int] | None = None,
    ):
        self.config = config or get_config().context
        self.instructions = instructions or InstructionLoader()
        self._token_counter = token_counter

    def estimate_text_tokens(self, text: str, chars_per_token: float | None = None) -> int:
        if not text:
            return 0
        if self._token_counter is not None:
            return int(self._token_counter(text))
        if chars_per_token is None:
            is_code = any(marker in text for marker in _CODE_MARKERS)
            chars_per_token = CODE_CHARS_PER_TOKEN if is_code else self.config.chars_per_token
        return math.ceil(len(text) / chars_per_token)

    def estimate_message_tokens(self, message: Message) -> int:
        tokens = MESSAGE_OVERHEAD_TOKENS + self.estimate_text_tokens(message.content)
        for call in message.tool_calls:
            tokens += TOOL_CALL_OVERHEAD_TOKENS
            tokens += self.estimate_text_tokens(
                json.dumps(call.arguments, default=str),
                chars_per_token=JSON_CHARS_PER_TOKEN,
            )
        return tokens

    def count_tokens(self, history: Sequence[Message]) -> int:
        return sum(self.estimate_message_tokens(message) for message in history)

    def compute_stats(self, history: Sequence[Message], max_tokens: int | None = None) -> ContextStats:
        limit = int(max_tokens if max_tokens is not None else self.config.max_tokens)
        by_role = {role: 0 for role in ROLES}
        for message in history:
            by_role[message.role] = by_role.get(message.role, 0) + self.estimate_message_tokens(message)
        total = sum(by_role.values())
        usage = (total / limit * 100.0) if limit > 0 else 0.0
        return ContextStats(
            total_tokens=total,
            max_tokens=limit,
            usage_percent=round(usage, 2),
            by_role=by_role,
            is_near_limit=usage >= self.config.near_limit_percent,
            is_critical=usage >= self.config.critical_percent,
        )

    def compaction_level_for(self, usage_percent: float) -> CompactionLevel:
        if usage_percent < self.config.near_limit_percent:
            return CompactionLevel.NONE
        if usage_percent >= self.config.aggressive_percent:
            return CompactionLevel.AGGRESSIVE
        if usage_percent >= self.config.moderate_percent:
            return CompactionLevel.MODERATE
        return CompactionLevel.LIGHT

    def needs_compaction(self, stats: ContextStats) -> bool:
        return self.compaction_level_for(stats.usage_percent) > CompactionLevel.NONE

    def preserve_count(self, level: CompactionLevel) -> int:
        """Number of most recent messages kept verbatim at ``level``."""
        if level >= CompactionLevel.AGGRESSIVE:
            return max(1, self.config.preserve_aggressive)
        if level >= CompactionLevel.MODERATE:
            return max(1, self.config.preserve_moderate)
        return max(1, self.config.preserve_light)

    @staticmethod
    def _tail_start(messages: list[Message], keep: int) -> int:
        """Index where the verbatim tail begins.

        The tail always contains the latest user message and never starts
        with a tool message cut off from the assistant call that produced it.
        """
        start = max(0, len(messages) - keep)
        last_user = max((i for i, m in enumerate(messages) if m.role == "user"), default=None)
        if last_user is not None and last_user < start:
            start = last_user
        while start > 0 and messages[start].role == "tool":
            start -= 1
        return start

    def _format_messages(self, messages: Sequence[Message]) -> str:
        """Format messages as a compact excerpt for the summary prompt."""
        limit = self.config.summary_excerpt_chars
        blocks: list[str] = []
        for message in messages:
            label = message.role
            if message.tool_name:
                label += f"({message.tool_name})"
            content = re.sub(r"\s+", " ", message.content.strip())
            if message.tool_calls:
                calls = ", ".join(call.name for call in message.tool_calls)
                content = f"{content} [called: {calls}]".strip()
            if len(content) > limit:
                content = content[:limit].rstrip() + "... [truncated]"
            blocks.append(f"{label}: {content or '[no content]'}")
        return "\n\n".join(blocks)

    @staticmethod
    def _fallback_summary(messages: Sequence[Message], previous: str | None) -> str:
        """Deterministic summary when the model cannot produce one."""
        parts = []
        if previous:
            parts.append(previous)
        parts.append(f"Compacted {len(messages)} messages - summary unavailable.")
        user_points = [
            re.sub(r"\s+", " ", m.content.strip())[:120]
            for m in messages
            if m.role == "user" and m.content.strip()
        ]
        if user_points:
            parts.append("Earlier requests: " + "; ".join(user_points[-3:]))
        return " ".join(parts)

    async def summarize(
        self,
        messages: Sequence[Message],
        model: LLMProvider,
        previous_summary: str | None = None,
    ) -> str:
        """Summarize messages with the model, falling back to a local summary."""
        request = self.instructions.compaction_request(self._format_messages(messages), previous_summary)
        try:
            response = await model.complete(
                messages=request,
                tools=None,
                temperature=0.3,
                max_tokens=self.config.max_summary_tokens,
            )
            summary = re.sub(r"\s+", " ", (response.content or "").strip())
            if summary:
                return summary
        except Exception as e:
            log.warning("Compaction summarization failed, using fallback", error=str(e))
        return self._fallback_summary(messages, previous_summary)

    def _unchanged(self, history: list[Message], tokens: int, level: CompactionLevel) -> CompactionResult:
        return CompactionResult(
            messages=tuple(history),
            original_count=len(history),
            compacted_count=len(history),
            tokens_before=tokens,
            tokens_after=tokens,
            level=level,
        )

    async def compact(
        self,
        history: Sequence[Message],
        level: CompactionLevel,
        model: LLMProvider,
    ) -> CompactionResult:
        """Replace the older middle of ``history`` with one summary message.

        Keeps the leading system message and the most recent messages
        verbatim. A summary left by an earlier compaction is folded into the
        new one. Returns the history unchanged when there is nothing to
        compact or when the summary would not make the history smaller.
        """
        messages = list(history)
        tokens_before = self.count_tokens(messages)
        if not messages or level <= CompactionLevel.NONE:
            return self._unchanged(messages, tokens_before, level)

        head: list[Message] = []
        rest = messages
        if rest and rest[0].role == "system" and not is_summary_message(rest[0]):
            head, rest = [rest[0]], rest[1:]
        previous_summary = None
        if rest and is_summary_message(rest[0]):
            previous_summary = _summary_body(rest[0])
            rest = rest[1:]

        keep = self.preserve_count(level)
        if len(rest) <= keep:
            return self._unchanged(messages, tokens_before, level)

        start = self._tail_start(rest, keep)
        middle, tail = rest[:start], rest[start:]
        if not middle:
            return self._unchanged(messages, tokens_before, level)

        summary_text = await self.summarize(middle, model, previous_summary)

        fixed_tokens = self.count_tokens(head) + self.count_tokens(tail)
        summary = summary_message(summary_text)
        if fixed_tokens + self.estimate_message_tokens(summary) >= tokens_before:
            budget = tokens_before - fixed_tokens - self.estimate_message_tokens(summary_message("")) - 1
            if budget <= 0:
                log.info("Compaction skipped, summary would not shrink history", level=level.name)
                return self._unchanged(messages, tokens_before, level)
            summary_text = summary_text[: int(budget * CODE_CHARS_PER_TOKEN)].rstrip()
            summary = summary_message(summary_text)
            while summary_text and fixed_tokens + self.estimate_message_tokens(summary) >= tokens_before:
                summary_text = summary_text[: max(0, len(summary_text) - 16)].rstrip()
                summary = summary_message(summary_text)
            if not summary_text:
                return self._unchanged(messages, tokens_before, level)

        compacted = [*head, summary, *tail]
        tokens_after = self.count_tokens(compacted)
        log.info(
            "Compacted history",
            level=level.name,
            before_tokens=tokens_before,
            after_tokens=tokens_after,
            compacted_messages=len(middle),
            kept_messages=len(tail),
        )
        return CompactionResult(
            messages=tuple(compacted),
            original_count=len(messages),
            compacted_count=len(compacted),
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            level=level,
            summary=summary_text,
        )
