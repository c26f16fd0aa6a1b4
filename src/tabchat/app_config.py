from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from tabchat.models import ModelConfig

PLATFORM_ENV_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


@dataclass
class RuntimeEnv:
    api_keys: dict[str, str]

    def has_credentials(self, platform_id: str | None) -> bool:
        return bool(platform_id) and bool(self.api_keys.get(platform_id or ""))


@dataclass
class AppConfig:
    platform_id: str
    model_id: str
    max_tokens: int
    temperature: float
    system_prompt: str
    store_backend: str
    store_db_path: str
    store_quota_bytes: int
    max_messages_per_session: int
    flush_interval_ms: int
    transport_max_retries: int
    transport_retry_base_delay_ms: int
    tokenizer_encoding: str
    thinking_enabled: bool
    models: dict[str, dict[str, ModelConfig]] = field(default_factory=dict)
    log_level: str = "INFO"
    log_consumers: list | None = None

    def model_config(self, platform_id: str | None, model_id: str | None) -> ModelConfig | None:
        if not platform_id or not model_id:
            return None
        return self.models.get(platform_id, {}).get(model_id)


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _parse_models(raw: object) -> dict[str, dict[str, ModelConfig]]:
    if not isinstance(raw, dict):
        return {}
    models: dict[str, dict[str, ModelConfig]] = {}
    for platform_id, platform_models in raw.items():
        if not isinstance(platform_models, dict):
            continue
        models[platform_id] = {
            model_id: ModelConfig.from_config(model_id, model)
            for model_id, model in platform_models.items()
            if isinstance(model, dict)
        }
    return models


def parse_app_config(config: dict) -> AppConfig:
    store_backend = str(config.get("StoreBackend", "memory")).strip().lower()
    if store_backend not in {"memory", "sqlite"}:
        raise ValueError(f"Unknown StoreBackend: {store_backend!r}. Supported: 'memory', 'sqlite'")

    return AppConfig(
        platform_id=str(config.get("Platform", "anthropic")).strip().lower(),
        model_id=config.get("Model", "claude-sonnet-4-5-20250929"),
        max_tokens=int(config.get("MaxTokens", 8192)),
        temperature=float(config.get("Temperature", 1.0)),
        system_prompt=str(config.get("SystemPrompt", "")),
        store_backend=store_backend,
        store_db_path=str(config.get("StoreDbPath", ".tabchat/store.db")),
        store_quota_bytes=int(config.get("StoreQuotaBytes", 0)),
        max_messages_per_session=int(config.get("MaxMessagesPerSession", 200)),
        flush_interval_ms=int(config.get("FlushIntervalMs", 16)),
        transport_max_retries=int(config.get("TransportMaxRetries", 2)),
        transport_retry_base_delay_ms=int(config.get("TransportRetryBaseDelayMs", 250)),
        tokenizer_encoding=str(config.get("TokenizerEncoding", "cl100k_base")),
        thinking_enabled=_to_bool(config.get("ThinkingEnabled", False), default=False),
        models=_parse_models(config.get("Models", {})),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        api_keys={platform: os.environ.get(var, "") for platform, var in PLATFORM_ENV_VARS.items()},
    )
