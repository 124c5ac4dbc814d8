"""Configuration management for Olly."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from olly.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.olly/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

RiskLevelName = Literal["safe", "prompt", "risky", "dangerous"]
OverrideName = Literal["always_allow", "always_deny"]


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "qwen2.5-coder:7b"
    base_url: str = "http://127.0.0.1:11434"
    temperature: float = 0.2
    max_tokens: int = 4096
    api_key: str = ""
    request_timeout: float = 120.0


class AgentConfig(BaseModel):
    """Agent loop limits."""

    max_iterations: int = 20
    loop_detection: bool = True
    loop_threshold: int = 3
    loop_window: int = 5
    nudge_on_empty: bool = True
    default_mode: Literal["plan", "build"] = "build"


class ContextConfig(BaseModel):
    """Context window configuration."""

    # Used when the model does not report its own context length.
    max_tokens: int = 32768
    near_limit_percent: float = 80.0
    critical_percent: float = 90.0
    moderate_percent: float = 85.0
    aggressive_percent: float = 90.0
    preserve_light: int = 8
    preserve_moderate: int = 6
    preserve_aggressive: int = 4
    max_summary_tokens: int = 200
    summary_excerpt_chars: int = 500
    chars_per_token: float = 3.5
    auto_compact: bool = True


class SafetyConfig(BaseModel):
    """Safety gate configuration."""

    project_root: str = "."
    tool_risks: dict[str, RiskLevelName] = Field(default_factory=dict)
    tool_overrides: dict[str, OverrideName] = Field(default_factory=dict)
    blocked_commands: list[str] = [
        "rm -rf /",
        "rm -rf /*",
        "mkfs",
        "dd if=",
        ":(){ :|:& };:",
        ":(){:|:&};:",
        "> /dev/sd",
        "chmod -R 777 /",
        "cat /etc/shadow",
    ]
    dangerous_command_patterns: list[str] = [
        r"\brm\s+(-[a-zA-Z]*[rf][a-zA-Z]*\s+)",
        r"\bsudo\b",
        r"\bchmod\s+(-R\s+)?777\b",
        r"\bchown\s+-R\b",
        r"\bgit\s+push\s+.*--force\b",
        r"\bgit\s+push\s+-f\b",
        r"\bgit\s+reset\s+--hard\b",
        r"\bgit\s+clean\s+-[a-zA-Z]*f",
        r"\bmv\s+/",
        r"\bkill\s+-9\b",
        r"\bshutdown\b",
        r"\breboot\b",
        r"\|\s*(ba|z)?sh\b",
        r"cat\s+/etc/passwd",
    ]
    network_commands: list[str] = [
        "curl",
        "wget",
        "nc",
        "netcat",
        "scp",
        "rsync",
        "ssh",
        "ftp",
        "sftp",
        "telnet",
    ]
    allow_network_commands: bool = False
    readonly_commands: list[str] = [
        "ls",
        "cat",
        "head",
        "tail",
        "less",
        "wc",
        "pwd",
        "echo",
        "find",
        "grep",
        "rg",
        "tree",
        "file",
        "stat",
        "du",
        "df",
        "which",
        "env",
        "date",
        "diff",
        "git status",
        "git log",
        "git diff",
        "git show",
        "git branch",
        "git blame",
    ]
    plan_mutation_patterns: list[str] = [
        r"(?<!>)>{1,2}(?!>)\s*(?!&|/dev/null\b)\S",
        r"\btee\b",
        r"\brm\b",
        r"\bmv\b",
        r"\bcp\b",
        r"\bmkdir\b",
        r"\btouch\b",
        r"\bsed\s+-i\b",
        r"\bgit\s+(commit|push|checkout|merge|rebase|reset|add|stash)\b",
        r"\b(npm|pip|yarn|pnpm|cargo)\s+(install|add|remove|uninstall)\b",
    ]
    denied_paths: list[str] = [
        ".env",
        ".env.*",
        "*.pem",
        "*.key",
        "id_rsa",
        "id_ed25519",
        "*.p12",
        "*.pfx",
        "credentials.*",
        "secrets.*",
        ".git/config",
    ]
    restrict_to_project: bool = True
    max_tool_calls_per_turn: int = 20
    max_tool_calls_per_session: int = 100
    preview_max_chars: int = 2000
    enable_audit_log: bool = True
    audit_log_path: str = ".olly/audit.jsonl"

    def resolve_audit_log_path(self, project_root: Path) -> Path:
        """Audit log location; relative paths live under the project root."""
        raw = Path(self.audit_log_path).expanduser()
        return raw if raw.is_absolute() else project_root / raw


class ToolsConfig(BaseModel):
    """Builtin tools configuration."""

    enabled: list[str] = [
        "list_dir",
        "read_file",
        "write_file",
        "edit_file",
        "glob",
        "grep",
        "run_command",
    ]
    shell_timeout: int = 60
    max_output_chars: int = 10000
    max_read_bytes: int = 200_000
    max_results: int = 200


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for Olly."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="OLLY_",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config {config_path} must be a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid config {config_path}: {e}") from e

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML; env vars fill anything the file leaves unset."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_project_root(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve project root, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.safety.project_root).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
