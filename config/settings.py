"""
Configuration loader for the flow engine.
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
class SessionConfig:
    default_timeout: float = 30
    default_timeout_unit: str = "minutes"        # seconds | minutes | hours | days
    store_backend: str = "memory"                # "memory" | "file" | "redis"
    store_file_dir: str = "./data"               # directory for file backend
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "flow-session:"
    lock_timeout: float = 10.0                   # seconds, redis lock only


@dataclass
class LayoutConfig:
    node_width: float = 280
    node_height: float = 120
    horizontal_gap: float = 80
    row_height: float = 200
    component_gap: int = 1                       # empty rows between stacked components
    passes: int = 4                              # barycenter sweeps
    max_nodes: int = 5000
    max_cycle_breaks: int = 1000                 # per-edge cycle breaking rounds before the DFS cut


@dataclass
class ExecutorConfig:
    max_steps: int = 100


@dataclass
class ContactsConfig:
    backend: str = "memory"                      # "memory" | "rest"
    base_url: str = ""
    auth_token: str = ""
    timeout: float = 10.0
    contact_path: str = "/api/contacts/{contact_id}"


@dataclass
class Settings:
    app_name: str = "FlowEngine"
    debug: bool = False
    timezone: str = "UTC"
    singleton_node_types: list[str] = field(default_factory=lambda: ["typebot", "flowise"])
    sessions: SessionConfig = field(default_factory=SessionConfig)
    layout: LayoutConfig = field(default_factory=LayoutConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    contacts: ContactsConfig = field(default_factory=ContactsConfig)


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
            "FLOW_ENGINE_CONFIG",
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
        settings.singleton_node_types = list(
            raw.get("singleton_node_types", settings.singleton_node_types)
        )

        if "sessions" in raw:
            s = raw["sessions"]
            defaults = SessionConfig()
            settings.sessions = SessionConfig(
                default_timeout=float(s.get("default_timeout", defaults.default_timeout)),
                default_timeout_unit=s.get("default_timeout_unit", defaults.default_timeout_unit),
                store_backend=s.get("store_backend", defaults.store_backend),
                store_file_dir=s.get("store_file_dir", defaults.store_file_dir),
                redis_url=s.get("redis_url", defaults.redis_url),
                key_prefix=s.get("key_prefix", defaults.key_prefix),
                lock_timeout=float(s.get("lock_timeout", defaults.lock_timeout)),
            )

        if "layout" in raw:
            lo = raw["layout"]
            defaults = LayoutConfig()
            settings.layout = LayoutConfig(
                node_width=float(lo.get("node_width", defaults.node_width)),
                node_height=float(lo.get("node_height", defaults.node_height)),
                horizontal_gap=float(lo.get("horizontal_gap", defaults.horizontal_gap)),
                row_height=float(lo.get("row_height", defaults.row_height)),
                component_gap=int(lo.get("component_gap", defaults.component_gap)),
                passes=int(lo.get("passes", defaults.passes)),
                max_nodes=int(lo.get("max_nodes", defaults.max_nodes)),
                max_cycle_breaks=int(lo.get("max_cycle_breaks", defaults.max_cycle_breaks)),
            )

        if "executor" in raw:
            settings.executor = ExecutorConfig(
                max_steps=int(raw["executor"].get("max_steps", ExecutorConfig.max_steps)),
            )

        if "contacts" in raw:
            c = raw["contacts"]
            defaults = ContactsConfig()
            settings.contacts = ContactsConfig(
                backend=c.get("backend", defaults.backend),
                base_url=c.get("base_url", defaults.base_url),
                auth_token=c.get("auth_token", defaults.auth_token),
                timeout=float(c.get("timeout", defaults.timeout)),
                contact_path=c.get("contact_path", defaults.contact_path),
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
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
