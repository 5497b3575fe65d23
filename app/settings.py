from decimal import Decimal
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SEVERITY_LEVELS = ("low", "medium", "high", "critical")


class Settings(BaseSettings):
    # database_url: str = "postgresql+psycopg://stationery@/pricing?host=/var/run/postgresql"
    database_url: str = "sqlite:///./pricing.db"
    db_echo: bool = False

    log_level: str = "INFO"
    log_format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    # Rollup
    supplier_priority: list[str] = ["ALKOR", "COMLANDI", "SOFT"]
    default_price_coefficient: Decimal | None = None
    ghost_offer_threshold_days: dict[str, int] = {"ALKOR": 3, "COMLANDI": 3, "SOFT": 8}
    rollup_batch_size: int = 500

    # Rule engine
    pricing_min_change_percent: Decimal = Decimal("0.5")
    default_max_price_change_percent: Decimal = Decimal("10")
    competitor_price_max_age_days: int = 30
    competitor_prices_include_tax: bool = True
    auto_apply_actor: str = "system:auto-approve"

    # Alerts
    alert_competitor_lower_threshold_percent: Decimal = Decimal("5")
    alert_opportunity_threshold_percent: Decimal = Decimal("15")
    alert_min_margin_percent: Decimal = Decimal("15")
    # (threshold, severity) pairs, highest threshold first: magnitude > threshold -> severity
    alert_competitor_gap_severity: list[tuple[Decimal, str]] = [
        (Decimal("20"), "critical"),
        (Decimal("10"), "high"),
        (Decimal("0"), "medium"),
    ]
    alert_opportunity_gap_severity: list[tuple[Decimal, str]] = [
        (Decimal("30"), "medium"),
        (Decimal("0"), "low"),
    ]
    alert_margin_deficit_severity: list[tuple[Decimal, str]] = [
        (Decimal("10"), "critical"),
        (Decimal("5"), "high"),
        (Decimal("0"), "medium"),
    ]
    alert_price_change_severity: list[tuple[Decimal, str]] = [
        (Decimal("10"), "high"),
        (Decimal("5"), "medium"),
        (Decimal("0"), "low"),
    ]

    # Competitor ingestion
    competitor_sources: list[dict[str, Any]] = []
    competitor_http_timeout: float = 20.0
    competitor_retry_count: int = 3
    competitor_request_sleep: float = 0.5

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if not v.startswith(("postgresql", "sqlite")):
            raise ValueError("database_url must start with 'postgresql' or 'sqlite'")
        return v

    @field_validator("supplier_priority")
    @classmethod
    def validate_supplier_priority(cls, v: list[str]) -> list[str]:
        codes = [code.strip().upper() for code in v if code.strip()]
        if not codes:
            raise ValueError("supplier_priority must list at least one supplier")
        if len(set(codes)) != len(codes):
            raise ValueError("supplier_priority must not contain duplicates")
        return codes

    @field_validator("default_price_coefficient")
    @classmethod
    def validate_coefficient(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v <= 0:
            raise ValueError("default_price_coefficient must be positive")
        return v

    @field_validator("rollup_batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("rollup_batch_size must be >= 1")
        return v

    @field_validator("pricing_min_change_percent", "alert_min_margin_percent")
    @classmethod
    def validate_non_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("percent thresholds must be >= 0")
        return v

    @field_validator("competitor_request_sleep", "competitor_http_timeout")
    @classmethod
    def validate_non_negative_float(cls, v: float) -> float:
        if v < 0:
            raise ValueError("sleep/timeout must be >= 0")
        return v

    @field_validator(
        "alert_competitor_gap_severity",
        "alert_opportunity_gap_severity",
        "alert_margin_deficit_severity",
        "alert_price_change_severity",
    )
    @classmethod
    def validate_severity_ladder(cls, v: list[tuple[Decimal, str]]) -> list[tuple[Decimal, str]]:
        if not v:
            raise ValueError("severity ladder must not be empty")
        thresholds = [threshold for threshold, _ in v]
        if thresholds != sorted(thresholds, reverse=True) or len(set(thresholds)) != len(thresholds):
            raise ValueError("severity thresholds must be strictly decreasing")
        ranks = []
        for _, severity in v:
            if severity not in SEVERITY_LEVELS:
                raise ValueError(f"unknown severity '{severity}'")
            ranks.append(SEVERITY_LEVELS.index(severity))
        if ranks != sorted(ranks, reverse=True):
            raise ValueError("severity must not decrease as the threshold grows")
        return v

    @field_validator("competitor_sources")
    @classmethod
    def validate_competitor_sources(cls, v: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for source in v:
            if str(source.get("type") or "html").lower() == "static":
                if not source.get("name"):
                    raise ValueError("competitor source is missing ['name']")
                continue
            missing = {"name", "search_url", "price_selector"} - set(source)
            if missing:
                raise ValueError(f"competitor source is missing {sorted(missing)}")
            if not source["search_url"].startswith(("http://", "https://")):
                raise ValueError("competitor search_url must start with 'http://' or 'https://'")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
