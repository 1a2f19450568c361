# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Storage
    # "memory"   - in-process stores (dev, tests, single instance demos)
    # "postgres" - asyncpg-backed stores (required for multi-instance deployments)
    storage_backend: Literal["memory", "postgres"] = "memory"

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Security
    admin_token: str | None = None
    allowed_origins: list[str] = ["*"]
    trust_identity_headers: bool = True  # X-Actor-Role / X-Actor-Id are set by the auth gateway
    public_rate_limit_per_minute: int = 60  # per client IP on public link routes

    # SLA / escalation (minutes per urgency tier)
    sla_emergency_minutes: int = 15
    sla_urgent_minutes: int = 45
    sla_standard_minutes: int = 120
    sla_warning_ratio: float = 0.2  # at-risk band: 0 < remaining <= ratio * sla
    scorecard_window_days: int = 45
    unbid_alert_minutes: int = 10  # open jobs with no bids after this long show up as alerts

    # Routing suggestions
    routing_top_n: int = 3

    # Commission / completion
    commission_enabled: bool = True
    commission_default_rate: float = 0.3
    commission_tolerance_pct: float = 0.15
    commission_tolerance_amount: float = 25.0
    commission_auto_charge: bool = True
    completion_max_amount: float = 1_000_000.0

    # Public links
    public_token_ttl_hours: int = 72

    # Notifications
    notification_capacity: int = 80
    notification_seen_keys_limit: int = 2000

    # Delivery channel
    # "log"      - local delivery (writes to the app log, used for in-app toasts)
    # "webhook"  - POST to a push gateway (web push / mobile push relay)
    # "telegram" - admin alerts into a Telegram chat
    # "sms"      - Twilio SMS to the recipient's phone when known
    # "fanout"   - every configured channel above
    # "disabled" - store only, never deliver
    delivery_channel: Literal["log", "webhook", "telegram", "sms", "fanout", "disabled"] = "log"
    push_webhook_url: str | None = None
    push_webhook_token: str | None = None

    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None

    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_phone_number: str | None = None

    # Monitoring
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def sla_table(self) -> dict[str, int]:
        """Urgency tier -> SLA minutes"""
        return {
            "emergency": self.sla_emergency_minutes,
            "urgent": self.sla_urgent_minutes,
            "standard": self.sla_standard_minutes,
        }

    @property
    def twilio_enabled(self) -> bool:
        return all(getattr(self, name) for name in CHANNEL_CREDENTIALS["sms"])

    @property
    def telegram_enabled(self) -> bool:
        return all(getattr(self, name) for name in CHANNEL_CREDENTIALS["telegram"])

    def validate_required_for_production(self) -> list[str]:
        """Names of settings prod cannot start without (always empty outside prod)"""
        if not self.is_production:
            return []

        missing = [] if self.admin_token else ["admin_token"]
        if self.storage_backend == "postgres" and not (self.database_url or self.pghost):
            missing.append("database_url or pghost")
        missing.extend(
            name for name in CHANNEL_CREDENTIALS.get(self.delivery_channel, ())
            if not getattr(self, name)
        )
        return missing


# Settings each delivery channel cannot work without
CHANNEL_CREDENTIALS = {
    "webhook": ("push_webhook_url",),
    "telegram": ("telegram_bot_token", "telegram_chat_id"),
    "sms": ("twilio_account_sid", "twilio_auth_token", "twilio_phone_number"),
}


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # Security
    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")
    if s.is_production and s.trust_identity_headers:
        warnings.append(
            "trust_identity_headers=True: ensure X-Actor-* headers are stripped "
            "and re-set by the auth gateway."
        )

    # Storage
    if s.storage_backend == "memory" and s.app_env != "dev":
        warnings.append(f"{s.app_env}: storage_backend=memory (jobs and bids are lost on restart).")

    # Dispatch tuning
    if not (s.sla_emergency_minutes <= s.sla_urgent_minutes <= s.sla_standard_minutes):
        warnings.append("SLA tiers are not ordered emergency <= urgent <= standard.")
    if not 0 < s.sla_warning_ratio < 1:
        warnings.append("sla_warning_ratio should be between 0 and 1.")
    if not 0 <= s.commission_default_rate <= 1:
        warnings.append("commission_default_rate is outside [0, 1] and will be clamped.")

    # Delivery
    if s.delivery_channel in ("webhook", "fanout") and not s.push_webhook_url:
        warnings.append(f"delivery_channel={s.delivery_channel} but push_webhook_url is not set.")
    for channel in ("telegram", "sms"):
        if s.delivery_channel == channel:
            absent = [name for name in CHANNEL_CREDENTIALS[channel] if not getattr(s, name)]
            if absent:
                warnings.append(f"delivery_channel={channel} but {', '.join(absent)} missing.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """Hard fail on missing prod settings; anything merely risky is printed."""
    missing = s.validate_required_for_production()
    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
