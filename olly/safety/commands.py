"""Shell command parsing and classification for run_command."""

import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from olly.config import SafetyConfig
from olly.types import Mode, RiskLevel

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&", ";;", "|&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time", "env", "exec"}


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators.

    Raises:
        ValueError if the command cannot be tokenized (e.g. unbalanced quotes)
    """
    tokens = _tokenize_shell_command(command)
    segments: list[list[str]] = []
    current: list[str] = []
    for token in tokens:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _extract_segment_base_command(tokens: list[str]) -> str:
    """Extract executable command token from a tokenized shell segment."""
    idx = 0
    while idx < len(tokens):
        token = str(tokens[idx]).strip()
        if not token or token in _SHELL_WRAPPER_TOKENS:
            idx += 1
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            idx += 1
            continue
        return token
    return ""


def extract_shell_base_commands(command: str) -> list[str]:
    """Extract base command name (basename) from each shell segment."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return []
    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return []
    base_commands: list[str] = []
    for segment in segments:
        base = _extract_segment_base_command(segment)
        if base:
            base_commands.append(Path(base).name)
    return base_commands


def _literal_pattern(pattern: str) -> re.Pattern[str]:
    """Match a blocked command literally, on token boundaries.

    A pattern ending in ``/`` must not continue into a longer path, so
    ``rm -rf /`` does not catch ``rm -rf /tmp/build``.
    """
    head = r"(?<![\w/.-])" if re.match(r"[\w/]", pattern) else ""
    tail = r"(?![\w.*-])" if pattern.endswith("/") else ""
    return re.compile(head + re.escape(pattern) + tail)


def _collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def is_blocked_shell_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Evaluate command against hard-blocked patterns.

    Returns ``(blocked, reason)`` where reason is ``empty_command``,
    ``unparseable_command`` or the matched pattern.
    """
    cleaned = str(command or "").strip()
    if not cleaned:
        return True, "empty_command"

    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return True, "unparseable_command"
    base_commands = [base for segment in segments if (base := _extract_segment_base_command(segment))]
    if not base_commands:
        return True, "unparseable_command"

    targets = [_collapse_whitespace(cleaned)]
    targets.extend(" ".join(tokens) for tokens in segments)
    for raw_pattern in blocked_patterns or []:
        pattern = _collapse_whitespace(str(raw_pattern or ""))
        if not pattern:
            continue
        compiled = _literal_pattern(pattern)
        for target in targets:
            if compiled.search(target):
                return True, pattern
    return False, ""


def _is_readonly_segment(tokens: list[str], readonly: list[str]) -> bool:
    base = _extract_segment_base_command(tokens)
    if not base:
        return False
    start = tokens.index(base)
    words = [Path(base).name, *tokens[start + 1:]]
    text = " ".join(words)
    for allowed in readonly:
        allowed = allowed.strip()
        if not allowed:
            continue
        if text == allowed or text.startswith(allowed + " "):
            return True
    return False


@dataclass
class CommandAssessment:
    """Risk of one shell command plus the reasons that raised it."""

    level: RiskLevel
    reasons: list[str] = field(default_factory=list)
    readonly: bool = False


def classify_command(command: str, mode: Mode, config: SafetyConfig) -> CommandAssessment:
    """Classify a shell command. Hard blocks are handled separately as vetoes.

    Build mode starts at ``prompt``. Dangerous patterns raise to
    ``dangerous``; network commands raise to ``risky`` unless allowed. In
    plan mode a command is escalated one level unless every segment is a
    whitelisted read-only command, and mutating constructs raise it to
    ``dangerous``.
    """
    cleaned = str(command or "").strip()
    assessment = CommandAssessment(level=RiskLevel.PROMPT)

    for pattern in config.dangerous_command_patterns:
        if _compile_pattern(pattern).search(cleaned):
            assessment.level = RiskLevel.DANGEROUS
            assessment.reasons.append(f"matches dangerous pattern: {pattern}")
            break

    if not config.allow_network_commands:
        network = set(config.network_commands)
        hits = [base for base in extract_shell_base_commands(cleaned) if base in network]
        if hits:
            assessment.level = assessment.level.at_least(RiskLevel.RISKY)
            assessment.reasons.append(f"network access: {', '.join(sorted(set(hits)))}")

    mutating = [
        pattern
        for pattern in config.plan_mutation_patterns
        if _compile_pattern(pattern).search(cleaned)
    ]
    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        segments = []
    assessment.readonly = bool(segments) and not mutating and all(
        _is_readonly_segment(tokens, config.readonly_commands) for tokens in segments
    )

    if mode is Mode.PLAN:
        if mutating:
            assessment.level = RiskLevel.DANGEROUS
            assessment.reasons.append("modifies the workspace in plan mode")
        elif not assessment.readonly:
            assessment.level = assessment.level.escalate()
            assessment.reasons.append("plan mode")

    return assessment
