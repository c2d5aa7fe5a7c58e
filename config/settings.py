"""
Configuration loader for the follow-up queue engine.
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
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.3
    max_tokens: int = 400
    api_key: str = ""


@dataclass
class DeadlineConfig:
    # Base allowance per priority, in hours. None means "no SLA".
    sla_hours: dict[str, Optional[float]] = field(default_factory=lambda: {
        "critical": 2, "high": 4, "medium": 24, "low": 72,
    })
    vip_overrides: dict[str, float] = field(default_factory=dict)   # sender → hours
    exclude_non_working_time: bool = True
    work_start_hour: int = 9
    work_end_hour: int = 17
    timezone: str = "UTC"
    at_risk_fraction: float = 0.25
    escalate_on_at_risk: bool = False


@dataclass
class SuggestionConfig:
    enabled: bool = True                 # use the LLM advisor when credentials exist
    timeout_s: float = 8.0
    fallback_confidence: float = 0.5
    default_confidence: float = 0.7
    max_learned_offset_hours: float = 24.0
    llm: LLMConfig = field(default_factory=LLMConfig)


@dataclass
class QueueConfig:
    max_page_size: int = 100
    default_page_size: int = 50
    lock_policy: str = "wait"            # "wait" | "fail"
    lock_timeout_s: float = 5.0
    active_list_ttl_s: int = 300
    statistics_ttl_s: int = 900
    history_ttl_s: int = 600


@dataclass
class SchedulerConfig:
    interval_seconds: int = 3600
    completed_retention_hours: float = 168.0    # completed → archived after this
    history_retention_days: int = 90             # 0 disables history purge
    retry_attempts: int = 3


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./followups.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                # "sql" | "memory" | "file"
    store_file_dir: str = "./data"               # directory for file backend
    pool_size: int = 5                           # server databases only
    echo_sql: bool = False


@dataclass
class MailboxConfig:
    type: str = "memory"                         # "rest" | "memory"
    base_url: str = ""
    auth_token: str = ""
    timeout_s: float = 15.0


@dataclass
class Settings:
    app_name: str = "FollowUpQueue"
    debug: bool = False
    log_format: str = "console"                  # "console" | "json"
    deadlines: DeadlineConfig = field(default_factory=DeadlineConfig)
    suggestions: SuggestionConfig = field(default_factory=SuggestionConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    mailbox: MailboxConfig = field(default_factory=MailboxConfig)


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


def _merge(defaults: Any, raw: dict[str, Any]) -> Any:
    """Overlay known keys from a raw dict onto a dataclass instance."""
    for key, value in raw.items():
        if hasattr(defaults, key):
            setattr(defaults, key, value)
    return defaults


def settings_from_dict(raw: dict[str, Any]) -> Settings:
    """Build Settings from an already-parsed config mapping."""
    settings = Settings()
    raw = _process_values(raw or {})

    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = raw.get("debug", settings.debug)
    settings.log_format = raw.get("log_format", settings.log_format)

    if "deadlines" in raw:
        dl = dict(raw["deadlines"])
        sla = {**settings.deadlines.sla_hours, **(dl.pop("sla_hours", None) or {})}
        overrides = {
            str(k).lower(): float(v) for k, v in (dl.pop("vip_overrides", None) or {}).items()
        }
        settings.deadlines = _merge(DeadlineConfig(sla_hours=sla, vip_overrides=overrides), dl)

    if "suggestions" in raw:
        sg = dict(raw["suggestions"])
        llm = _merge(LLMConfig(), sg.pop("llm", None) or {})
        settings.suggestions = _merge(SuggestionConfig(llm=llm), sg)

    if "queue" in raw:
        settings.queue = _merge(QueueConfig(), raw["queue"])

    if "scheduler" in raw:
        settings.scheduler = _merge(SchedulerConfig(), raw["scheduler"])

    if "database" in raw:
        settings.database = _merge(DatabaseConfig(), raw["database"])

    if "mailbox" in raw:
        settings.mailbox = _merge(MailboxConfig(), raw["mailbox"])

    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FOLLOWUP_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    settings = settings_from_dict(raw)
    validate_settings(settings)

    _settings = settings
    return settings


def validate_settings(settings: Settings) -> None:
    """
    Reject invalid configuration at startup.
    Calendar problems must never surface at evaluation time.
    """
    from deadlines.policy import BusinessCalendar
    from models.errors import ConfigurationError

    dl = settings.deadlines
    # Constructing the calendar validates hours and time zone.
    BusinessCalendar(
        start_hour=dl.work_start_hour,
        end_hour=dl.work_end_hour,
        timezone=dl.timezone,
        exclude_non_working_time=dl.exclude_non_working_time,
    )

    errors = []
    for priority, hours in dl.sla_hours.items():
        if priority not in ("critical", "high", "medium", "low"):
            errors.append(f"unknown priority in sla_hours: {priority}")
        elif hours is not None and hours <= 0:
            errors.append(f"sla_hours.{priority} must be positive")
    for sender, hours in dl.vip_overrides.items():
        if hours <= 0:
            errors.append(f"vip_overrides[{sender}] must be positive")
    if not 0 < dl.at_risk_fraction < 1:
        errors.append("at_risk_fraction must be between 0 and 1")
    if settings.queue.lock_policy not in ("wait", "fail"):
        errors.append(f"queue.lock_policy must be 'wait' or 'fail', got {settings.queue.lock_policy!r}")
    if settings.queue.max_page_size <= 0:
        errors.append("queue.max_page_size must be positive")
    if settings.queue.default_page_size > settings.queue.max_page_size:
        errors.append("queue.default_page_size exceeds queue.max_page_size")
    if settings.scheduler.interval_seconds <= 0:
        errors.append("scheduler.interval_seconds must be positive")
    if settings.suggestions.timeout_s <= 0:
        errors.append("suggestions.timeout_s must be positive")
    if settings.database.pool_size <= 0:
        errors.append("database.pool_size must be positive")
    if settings.database.store_backend not in ("sql", "memory", "file"):
        errors.append(f"unknown database.store_backend: {settings.database.store_backend}")

    if errors:
        raise ConfigurationError("Invalid configuration: " + "; ".join(errors),
                                 details={"errors": errors})


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
