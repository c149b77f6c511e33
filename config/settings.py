"""
Configuration loader for the QueueBridge system.
Reads settings from YAML file with environment variable substitution,
then applies the well-known environment overrides (QUEUE_PROVIDER,
AWS_*, RABBITMQ_URL, PORT, LOG_LEVEL).
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class SqsConfig:
    region: str = ""
    endpoint_url: str = ""              # LocalStack / ElasticMQ; empty = AWS
    access_key_id: str = ""
    secret_access_key: str = ""
    poll_interval: float = 1.0          # seconds between poll cycles
    wait_time_seconds: int = 1          # bounded receive wait
    max_messages: int = 10              # receive batch cap (SQS max is 10)


@dataclass
class RabbitMQConfig:
    url: str = ""
    prefetch_count: int = 10


@dataclass
class QueueConfig:
    provider: str = "sqs"               # "sqs" | "rabbitmq"
    sqs: Optional[SqsConfig] = None
    rabbitmq: Optional[RabbitMQConfig] = None


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "QueueBridge"
    debug: bool = False
    queue: QueueConfig = field(default_factory=QueueConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


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


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _parse_sqs(raw: dict[str, Any]) -> SqsConfig:
    defaults = SqsConfig()
    return SqsConfig(
        region=raw.get("region", defaults.region) or "",
        endpoint_url=raw.get("endpoint_url", defaults.endpoint_url) or "",
        access_key_id=raw.get("access_key_id", defaults.access_key_id) or "",
        secret_access_key=raw.get("secret_access_key", defaults.secret_access_key) or "",
        poll_interval=float(raw.get("poll_interval", defaults.poll_interval)),
        wait_time_seconds=int(raw.get("wait_time_seconds", defaults.wait_time_seconds)),
        max_messages=int(raw.get("max_messages", defaults.max_messages)),
    )


def _parse_rabbitmq(raw: dict[str, Any]) -> RabbitMQConfig:
    return RabbitMQConfig(
        url=raw.get("url", "") or "",
        prefetch_count=int(raw.get("prefetch_count", 10)),
    )


def _apply_env_overrides(settings: Settings) -> None:
    env = os.environ
    queue = settings.queue

    if env.get("QUEUE_PROVIDER"):
        queue.provider = env["QUEUE_PROVIDER"].strip().lower()

    sqs_env = {
        "region": env.get("AWS_REGION"),
        "endpoint_url": env.get("AWS_ENDPOINT_URL"),
        "access_key_id": env.get("AWS_ACCESS_KEY_ID"),
        "secret_access_key": env.get("AWS_SECRET_ACCESS_KEY"),
    }
    if any(sqs_env.values()):
        if queue.sqs is None:
            queue.sqs = SqsConfig()
        for attr, value in sqs_env.items():
            if value:
                setattr(queue.sqs, attr, value)

    if env.get("RABBITMQ_URL"):
        if queue.rabbitmq is None:
            queue.rabbitmq = RabbitMQConfig()
        queue.rabbitmq.url = env["RABBITMQ_URL"]

    if env.get("PORT"):
        settings.server.port = int(env["PORT"])
    if env.get("LOG_LEVEL"):
        settings.logging.level = env["LOG_LEVEL"].upper()


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "QUEUEBRIDGE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug", settings.debug))

        if "queue" in raw:
            q = raw["queue"] or {}
            settings.queue = QueueConfig(
                provider=str(q.get("provider", "sqs")).lower(),
                sqs=_parse_sqs(q["sqs"]) if q.get("sqs") else None,
                rabbitmq=_parse_rabbitmq(q["rabbitmq"]) if q.get("rabbitmq") else None,
            )

        if "server" in raw:
            srv = raw["server"] or {}
            settings.server = ServerConfig(
                host=srv.get("host", settings.server.host),
                port=int(srv.get("port", settings.server.port)),
                cors_origins=srv.get("cors_origins", settings.server.cors_origins),
            )

        if "logging" in raw:
            lg = raw["logging"] or {}
            settings.logging = LoggingConfig(
                level=str(lg.get("level", "INFO")).upper(),
                json=_as_bool(lg.get("json", False)),
            )

    _apply_env_overrides(settings)

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
