from pydantic_settings import BaseSettings
from pydantic import Field, field_validator


class Settings(BaseSettings):
    # =========================
    # Environment
    # =========================
    ENV: str = Field(default="dev")

    # =========================
    # Redis (bans, challenges, counters, audit trail)
    # =========================
    REDIS_URL: str
    KEY_PREFIX: str = Field(default="immune")
    STORE_TIMEOUT_SECONDS: float = Field(default=0.5)

    # =========================
    # Admin plane
    # =========================
    ADMIN_API_KEY: str

    # =========================
    # Protected upstream (ALLOW traffic is forwarded here)
    # =========================
    UPSTREAM_BASE_URL: str = Field(default="http://localhost:8080")
    PORT: int = Field(default=8000)
    MAX_SCAN_BYTES: int = Field(default=65536)
    MAX_BODY_BYTES: int = Field(default=1048576)

    # =========================
    # Threat bands
    # =========================
    CHALLENGE_THRESHOLD: float = Field(default=0.5)
    BAN_THRESHOLD: float = Field(default=0.85)
    PARANOIA_CHALLENGE_THRESHOLD: float = Field(default=0.3)
    PARANOIA_BAN_THRESHOLD: float = Field(default=0.7)

    # =========================
    # Proof-of-work challenges
    # =========================
    CHALLENGE_TTL_SECONDS: int = Field(default=600)
    CHALLENGE_MIN_DIFFICULTY: int = Field(default=2)
    CHALLENGE_MAX_DIFFICULTY: int = Field(default=5)
    CHALLENGE_HARD_MAX_DIFFICULTY: int = Field(default=6)
    CHALLENGE_PATH: str = Field(default="/challenge/pow")

    # =========================
    # Rate limiting (fixed window per IP)
    # =========================
    RATE_LIMIT_REQUESTS: int = Field(default=10)
    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=60)
    CHALLENGE_RATE_LIMIT_REQUESTS: int = Field(default=10)
    CHALLENGE_RATE_LIMIT_WINDOW_SECONDS: int = Field(default=60)

    # =========================
    # Ban lifecycle
    # =========================
    BAN_BASE_TTL_SECONDS: int = Field(default=3600)
    BAN_MAX_TTL_SECONDS: int = Field(default=86400)
    BAN_HISTORY_TTL_SECONDS: int = Field(default=30 * 86400)

    # =========================
    # Immunity markers
    # =========================
    POW_IMMUNITY_SECONDS: int = Field(default=3600)
    BYPASS_IMMUNITY_SECONDS: int = Field(default=1800)
    BYPASS_LOW_TRUST_IMMUNITY_SECONDS: int = Field(default=900)
    UNBAN_IMMUNITY_SECONDS: int = Field(default=600)

    # =========================
    # Bypass (declared inability to solve)
    # =========================
    BYPASS_DAILY_QUOTA: int = Field(default=3)
    BYPASS_MIN_TRUST: int = Field(default=40)
    BYPASS_FULL_TRUST: int = Field(default=60)
    BYPASS_ALERT_THRESHOLD: int = Field(default=2)

    # =========================
    # Audit trail
    # =========================
    AUDIT_MAX_ENTRIES: int = Field(default=1000)
    AUDIT_PAGE_SIZE: int = Field(default=100)

    # =========================
    # Dashboard health
    # =========================
    HEALTH_WARNING_ACTIVE_BANS: int = Field(default=5)
    HEALTH_CRITICAL_ACTIVE_BANS: int = Field(default=20)
    HEALTH_WARNING_CRITICAL_ALERTS: int = Field(default=1)
    HEALTH_CRITICAL_CRITICAL_ALERTS: int = Field(default=5)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @field_validator("ADMIN_API_KEY")
    @classmethod
    def _admin_key_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("ADMIN_API_KEY must not be empty")
        return value


# Singleton
settings = Settings()
