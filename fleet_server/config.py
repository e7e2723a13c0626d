from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

logger = logging.getLogger("fleet_server.config")

DEFAULT_TELEMETRY_TOPIC = "greenbro/+/+/telemetry"
DEFAULT_CONTROL_TOPIC_TEMPLATE = "greenbro/{device_external_id}/commands"
DEFAULT_PUSH_ROLES = ("owner", "admin", "facilities")
MIN_ALERT_INTERVAL_SECONDS = 15


@dataclass(frozen=True, slots=True)
class FeedConfig:
    url: str | None = None
    username: str | None = None
    password: str | None = None
    telemetry_topic: str = DEFAULT_TELEMETRY_TOPIC
    connect_timeout_ms: int = 10000
    disabled: bool = False

    @property
    def configured(self) -> bool:
        return bool(self.url) and not self.disabled

    @property
    def host(self) -> str:
        return urlparse(self.url or "").hostname or "localhost"

    @property
    def port(self) -> int:
        parsed = urlparse(self.url or "")
        if parsed.port:
            return parsed.port
        return 8883 if parsed.scheme in {"mqtts", "ssl"} else 1883

    @property
    def use_tls(self) -> bool:
        return urlparse(self.url or "").scheme in {"mqtts", "ssl"}


@dataclass(frozen=True, slots=True)
class ControlConfig:
    api_url: str | None = None
    api_key: str | None = None
    disabled: bool = False
    mqtt_topic_template: str = DEFAULT_CONTROL_TOPIC_TEMPLATE
    throttle_ms: int = 5000
    timeout_ms: int = 10000

    @property
    def http_configured(self) -> bool:
        return bool(self.api_url and self.api_key) and not self.disabled


@dataclass(frozen=True, slots=True)
class AlertConfig:
    offline_minutes: int = 10
    offline_critical_minutes: int = 60
    high_temp_threshold: float = 60.0
    interval_seconds: int = 60
    worker_enabled: bool = True


@dataclass(frozen=True, slots=True)
class PushConfig:
    access_token: str | None = None
    disabled: bool = False
    roles: tuple[str, ...] = DEFAULT_PUSH_ROLES
    dispatch_mode: str = "inline"
    healthcheck_enabled: bool = False
    healthcheck_interval_minutes: int = 30
    healthcheck_token: str | None = None

    @property
    def configured(self) -> bool:
        return bool(self.access_token) and not self.disabled


@dataclass(frozen=True, slots=True)
class HealthConfig:
    heat_pump_history_url: str | None = None
    heat_pump_history_api_key: str | None = None
    heat_pump_history_disabled: bool = False
    heat_pump_history_check_minutes: int = 30

    @property
    def heat_pump_history_configured(self) -> bool:
        return bool(self.heat_pump_history_url) and not self.heat_pump_history_disabled


@dataclass(frozen=True, slots=True)
class ServerConfig:
    environment: str
    database_url: str
    redis_url: str
    host: str = "0.0.0.0"
    port: int = 8000
    version: str = "0.1.0"
    dev_enable_docs: bool = False
    enforce_https: bool = False
    metrics_token: str | None = None
    ingest_api_key: str | None = None
    ingest_rate_limit_per_minute: int = 600
    feed: FeedConfig = field(default_factory=FeedConfig)
    control: ControlConfig = field(default_factory=ControlConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    push: PushConfig = field(default_factory=PushConfig)
    health: HealthConfig = field(default_factory=HealthConfig)

    @property
    def is_test(self) -> bool:
        return self.environment in {"test", "ci"}


def _require_env(name: str) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        raise ValueError(f"{name} is required")
    return value


def _optional_env(name: str) -> str | None:
    return os.getenv(name, "").strip() or None


def _parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_int(name: str, default: int, minimum: int | None = None) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc


def _parse_roles(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return DEFAULT_PUSH_ROLES
    roles = tuple(item.strip().lower() for item in raw.split(",") if item.strip())
    return roles or DEFAULT_PUSH_ROLES


def _validate_database_url(url: str, allow_test_sqlite: bool) -> str:
    lowered = url.lower()
    if lowered.startswith("postgresql://") or lowered.startswith("postgresql+psycopg://"):
        return url
    if allow_test_sqlite and lowered.startswith("sqlite://"):
        return url
    raise ValueError("DATABASE_URL must use PostgreSQL in non-test deployments")


def load_feed_config() -> FeedConfig:
    return FeedConfig(
        url=_optional_env("GB_MQTT_URL"),
        username=_optional_env("GB_MQTT_USERNAME"),
        password=_optional_env("GB_MQTT_PASSWORD"),
        telemetry_topic=os.getenv("GB_MQTT_TELEMETRY_TOPIC", "").strip() or DEFAULT_TELEMETRY_TOPIC,
        connect_timeout_ms=_parse_int("GB_MQTT_CONNECT_TIMEOUT_MS", 10000, minimum=1),
        disabled=_parse_bool(os.getenv("GB_MQTT_DISABLED"), False),
    )


def load_control_config() -> ControlConfig:
    api_url = _optional_env("GB_CONTROL_API_URL")
    api_key = _optional_env("GB_CONTROL_API_KEY")
    if bool(api_url) != bool(api_key):
        logger.warning("control HTTP transport needs both GB_CONTROL_API_URL and GB_CONTROL_API_KEY; ignoring")
    return ControlConfig(
        api_url=api_url.rstrip("/") if api_url else None,
        api_key=api_key,
        disabled=_parse_bool(os.getenv("GB_CONTROL_DISABLED"), False),
        mqtt_topic_template=os.getenv("GB_MQTT_CONTROL_TOPIC_TEMPLATE", "").strip() or DEFAULT_CONTROL_TOPIC_TEMPLATE,
        throttle_ms=_parse_int("GB_CONTROL_THROTTLE_MS", 5000, minimum=0),
        timeout_ms=_parse_int("GB_CONTROL_TIMEOUT_MS", 10000, minimum=1),
    )


def load_alert_config() -> AlertConfig:
    offline_minutes = _parse_int("GB_ALERT_OFFLINE_MINUTES", 10, minimum=1)
    critical_minutes = _parse_int("GB_ALERT_OFFLINE_CRITICAL_MINUTES", 60, minimum=1)
    if critical_minutes < offline_minutes:
        raise ValueError("GB_ALERT_OFFLINE_CRITICAL_MINUTES must be >= GB_ALERT_OFFLINE_MINUTES")
    interval = _parse_int("GB_ALERT_INTERVAL_SECONDS", 60)
    return AlertConfig(
        offline_minutes=offline_minutes,
        offline_critical_minutes=critical_minutes,
        high_temp_threshold=_parse_float("GB_ALERT_HIGH_TEMP_THRESHOLD", 60.0),
        interval_seconds=max(MIN_ALERT_INTERVAL_SECONDS, interval),
        worker_enabled=_parse_bool(os.getenv("GB_ALERT_WORKER_ENABLED"), True),
    )


def load_push_config() -> PushConfig:
    dispatch_mode = os.getenv("GB_PUSH_DISPATCH", "inline").strip().lower()
    if dispatch_mode not in {"inline", "celery"}:
        raise ValueError("GB_PUSH_DISPATCH must be 'inline' or 'celery'")
    return PushConfig(
        access_token=_optional_env("GB_EXPO_ACCESS_TOKEN"),
        disabled=_parse_bool(os.getenv("GB_PUSH_DISABLED"), False),
        roles=_parse_roles(os.getenv("GB_PUSH_ROLES")),
        dispatch_mode=dispatch_mode,
        healthcheck_enabled=_parse_bool(os.getenv("GB_PUSH_HEALTHCHECK_ENABLED"), False),
        healthcheck_interval_minutes=_parse_int("GB_PUSH_HEALTHCHECK_INTERVAL_MINUTES", 30, minimum=1),
        healthcheck_token=_optional_env("GB_PUSH_HEALTHCHECK_TOKEN"),
    )


def load_config() -> ServerConfig:
    environment = os.getenv("GB_ENV", "development").strip().lower()
    allow_test_sqlite = _parse_bool(os.getenv("GB_ALLOW_SQLITE_FOR_TESTS"), environment in {"test", "ci"})

    database_url = _validate_database_url(_require_env("DATABASE_URL"), allow_test_sqlite=allow_test_sqlite)
    redis_url = _require_env("REDIS_URL")

    dev_docs_flag = _parse_bool(os.getenv("GB_DEV_ENABLE_DOCS"), False)
    dev_enable_docs = bool(dev_docs_flag and environment in {"development", "local", "dev", "test", "ci"})

    enforce_https_default = environment in {"production", "prod", "staging"}
    enforce_https = _parse_bool(os.getenv("GB_ENFORCE_HTTPS"), enforce_https_default)

    return ServerConfig(
        environment=environment,
        database_url=database_url,
        redis_url=redis_url,
        host=os.getenv("GB_SERVER_HOST", "0.0.0.0"),
        port=_parse_int("GB_SERVER_PORT", 8000, minimum=1),
        version=os.getenv("GB_VERSION", "0.1.0").strip() or "0.1.0",
        dev_enable_docs=dev_enable_docs,
        enforce_https=enforce_https,
        metrics_token=_optional_env("GB_METRICS_TOKEN"),
        ingest_api_key=_optional_env("GB_INGEST_API_KEY"),
        ingest_rate_limit_per_minute=_parse_int("GB_INGEST_RATE_LIMIT_PER_MINUTE", 600, minimum=1),
        feed=load_feed_config(),
        control=load_control_config(),
        alerts=load_alert_config(),
        push=load_push_config(),
        health=HealthConfig(
            heat_pump_history_url=_optional_env("GB_HEATPUMP_HISTORY_URL"),
            heat_pump_history_api_key=_optional_env("GB_HEATPUMP_HISTORY_API_KEY"),
            heat_pump_history_disabled=_parse_bool(os.getenv("GB_HEATPUMP_HISTORY_DISABLED"), False),
            heat_pump_history_check_minutes=_parse_int("GB_HEATPUMP_HISTORY_CHECK_MINUTES", 30, minimum=1),
        ),
    )
