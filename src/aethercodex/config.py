import json
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_API_URL = "https://api.deepseek.com/v1/chat/completions"


@dataclass(frozen=True)
class Paths:
    base_dir: Path

    @property
    def data_dir(self) -> Path:
        return self.base_dir

    @property
    def db_path(self) -> Path:
        return self.data_dir / "aethercodex.db"

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    @property
    def log_path(self) -> Path:
        return self.data_dir / "aethercodex.log"


@dataclass(frozen=True)
class LLMSettings:
    base_url: str = DEFAULT_API_URL
    api_key: str | None = None
    model: str = "deepseek-chat"
    reasoning_model: str = "deepseek-reasoner"
    max_tokens: int = 8192
    reasoning_max_tokens: int = 64_000
    timeout_s: float = 300.0
    reasoning_timeout_s: float = 600.0


@dataclass(frozen=True)
class MemorySettings:
    history_limit: int = 7
    history_max_tokens: int = 2200
    summary_max_tokens: int = 400
    aegis_notes_max_tokens: int = 500
    aegis_notes_limit: int = 8
    note_max_length: int = 500
    task_list_max_tokens: int = 1111


@dataclass(frozen=True)
class ToolSettings:
    max_retries: int = 2
    standard_timeout_s: float = 3000.0
    fallback_timeout_s: float = 30.0
    retry_backoff_s: float = 1.0


@dataclass(frozen=True)
class OracleSettings:
    max_depth: int = 80
    max_restarts: int = 3
    temperature_delta_threshold: float = 0.2


@dataclass(frozen=True)
class AppConfig:
    llm: LLMSettings = field(default_factory=LLMSettings)
    memory: MemorySettings = field(default_factory=MemorySettings)
    tools: ToolSettings = field(default_factory=ToolSettings)
    oracle: OracleSettings = field(default_factory=OracleSettings)
    project_root: Path = field(default_factory=Path.cwd)
    manifest_name: str = "hermetic.manifest.md"

    @property
    def manifest_path(self) -> Path:
        return self.project_root / self.manifest_name


def load_paths(base_dir: Path | None = None) -> Paths:
    resolved = base_dir or (Path.home() / ".aethercodex")
    return Paths(base_dir=resolved)


def load_config(path: Path) -> AppConfig:
    payload = json.loads(path.read_text()) if path.exists() else {}
    llm = payload.get("llm", {})
    memory = payload.get("memory", {})
    tools = payload.get("tools", {})
    oracle = payload.get("oracle", {})
    defaults = LLMSettings()
    return AppConfig(
        llm=LLMSettings(
            base_url=llm.get("base_url") or os.environ.get("DEEPSEEK_API_URL") or DEFAULT_API_URL,
            api_key=llm.get("api_key") or os.environ.get("DEEPSEEK_API_KEY"),
            model=str(llm.get("model", defaults.model)),
            reasoning_model=str(llm.get("reasoning_model", defaults.reasoning_model)),
            max_tokens=int(llm.get("max_tokens", defaults.max_tokens)),
            reasoning_max_tokens=int(llm.get("reasoning_max_tokens", defaults.reasoning_max_tokens)),
            timeout_s=float(llm.get("timeout_s", defaults.timeout_s)),
            reasoning_timeout_s=float(llm.get("reasoning_timeout_s", defaults.reasoning_timeout_s)),
        ),
        memory=MemorySettings(
            history_limit=int(memory.get("history_limit", 7)),
            history_max_tokens=int(memory.get("history_max_tokens", 2200)),
            summary_max_tokens=int(memory.get("summary_max_tokens", 400)),
            aegis_notes_max_tokens=int(memory.get("aegis_notes_max_tokens", 500)),
            aegis_notes_limit=int(memory.get("aegis_notes_limit", 8)),
            note_max_length=int(memory.get("note_max_length", 500)),
            task_list_max_tokens=int(memory.get("task_list_max_tokens", 1111)),
        ),
        tools=ToolSettings(
            max_retries=int(tools.get("max_retries", 2)),
            standard_timeout_s=float(tools.get("standard_timeout_s", 3000.0)),
            fallback_timeout_s=float(tools.get("fallback_timeout_s", 30.0)),
            retry_backoff_s=float(tools.get("retry_backoff_s", 1.0)),
        ),
        oracle=OracleSettings(
            max_depth=int(oracle.get("max_depth", 80)),
            max_restarts=int(oracle.get("max_restarts", 3)),
            temperature_delta_threshold=float(oracle.get("temperature_delta_threshold", 0.2)),
        ),
        project_root=Path(payload.get("project_root") or Path.cwd()),
        manifest_name=str(payload.get("manifest_name", "hermetic.manifest.md")),
    )


def save_config(path: Path, config: AppConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    env_key = os.environ.get("DEEPSEEK_API_KEY")
    api_key = config.llm.api_key if config.llm.api_key != env_key else None
    payload = {
        "llm": {
            "base_url": config.llm.base_url,
            "api_key": api_key,
            "model": config.llm.model,
            "reasoning_model": config.llm.reasoning_model,
            "max_tokens": config.llm.max_tokens,
            "reasoning_max_tokens": config.llm.reasoning_max_tokens,
            "timeout_s": config.llm.timeout_s,
            "reasoning_timeout_s": config.llm.reasoning_timeout_s,
        },
        "memory": {
            "history_limit": config.memory.history_limit,
            "history_max_tokens": config.memory.history_max_tokens,
            "summary_max_tokens": config.memory.summary_max_tokens,
            "aegis_notes_max_tokens": config.memory.aegis_notes_max_tokens,
            "aegis_notes_limit": config.memory.aegis_notes_limit,
            "note_max_length": config.memory.note_max_length,
            "task_list_max_tokens": config.memory.task_list_max_tokens,
        },
        "tools": {
            "max_retries": config.tools.max_retries,
            "standard_timeout_s": config.tools.standard_timeout_s,
            "fallback_timeout_s": config.tools.fallback_timeout_s,
            "retry_backoff_s": config.tools.retry_backoff_s,
        },
        "oracle": {
            "max_depth": config.oracle.max_depth,
            "max_restarts": config.oracle.max_restarts,
            "temperature_delta_threshold": config.oracle.temperature_delta_threshold,
        },
        "project_root": str(config.project_root),
        "manifest_name": config.manifest_name,
    }
    path.write_text(json.dumps(payload, indent=2))
