"""
Configuration loader for the Relay Agent daemon.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"                 # "anthropic" | "openai"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.4
    max_tokens: int = 1024
    api_key: str = ""
    system_prompt_template: str = ""
    turn_timeout_s: float = 120.0               # a turn exceeding this is a transient timeout
    max_tool_rounds: int = 10
    identity_file: str = ""                     # optional text prepended to the system prompt
    soul_file: str = ""


@dataclass
class HeartbeatDefaults:
    interval_ms: int = 1_800_000                # 30 minutes
    max_followups: int = 5


@dataclass
class StoreConfig:
    backend: str = "file"                       # "memory" | "file"
    data_dir: str = "./.relay-agent"
    audit_log: bool = True                      # append transitions to {data_dir}/transitions.jsonl


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class QueueConfig:
    auto_activate_dequeued: bool = True         # run the first turn when an instance leaves QUEUED


@dataclass
class DaemonConfig:
    host: str = "127.0.0.1"
    port: int = 3214


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "console"                     # "console" | "json"


@dataclass
class Settings:
    app_name: str = "RelayAgent"
    debug: bool = False
    timezone: str = "UTC"
    llm: LLMConfig = field(default_factory=LLMConfig)
    heartbeat: HeartbeatDefaults = field(default_factory=HeartbeatDefaults)
    store: StoreConfig = field(default_factory=StoreConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)

    def channel_enabled(self, name: str) -> bool:
        ch = self.channels.get(name)
        return bool(ch and ch.enabled)

    def channel_credentials(self, name: str) -> dict[str, Any]:
        ch = self.channels.get(name)
        return dict(ch.credentials) if ch else {}


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "llm" in raw:
            llm = raw["llm"]
            settings.llm = LLMConfig(
                provider=llm.get("provider", "anthropic"),
                model=llm.get("model", settings.llm.model),
                temperature=llm.get("temperature", settings.llm.temperature),
                max_tokens=llm.get("max_tokens", 1024),
                api_key=llm.get("api_key", ""),
                system_prompt_template=llm.get("system_prompt_template", ""),
                turn_timeout_s=float(llm.get("turn_timeout_s", settings.llm.turn_timeout_s)),
                max_tool_rounds=int(llm.get("max_tool_rounds", settings.llm.max_tool_rounds)),
                identity_file=llm.get("identity_file", ""),
                soul_file=llm.get("soul_file", ""),
            )

        if "heartbeat" in raw:
            hb = raw["heartbeat"]
            settings.heartbeat = HeartbeatDefaults(
                interval_ms=int(hb.get("interval_ms", settings.heartbeat.interval_ms)),
                max_followups=int(hb.get("max_followups", settings.heartbeat.max_followups)),
            )

        if "store" in raw:
            st = raw["store"]
            settings.store = StoreConfig(
                backend=st.get("backend", settings.store.backend),
                data_dir=st.get("data_dir", settings.store.data_dir),
                audit_log=st.get("audit_log", settings.store.audit_log),
            )

        if "queue" in raw:
            q = raw["queue"]
            settings.queue = QueueConfig(
                auto_activate_dequeued=q.get("auto_activate_dequeued", True),
            )

        if "daemon" in raw:
            d = raw["daemon"]
            settings.daemon = DaemonConfig(
                host=d.get("host", settings.daemon.host),
                port=int(d.get("port", settings.daemon.port)),
            )

        if "logging" in raw:
            lg = raw["logging"]
            settings.logging = LoggingConfig(
                level=lg.get("level", settings.logging.level),
                format=lg.get("format", settings.logging.format),
            )

        if "channels" in raw:
            for ch_name, ch_data in raw["channels"].items():
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials=ch_data.get("credentials", {}),
                )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
