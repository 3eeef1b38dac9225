from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from dataclasses import dataclass
from typing import List, Tuple


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Grade Sync Engine"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./gradesync.db"
    DATABASE_ECHO: bool = False

    # Canvas settings
    CANVAS_BASE_URL: str = "https://canvas.instructure.com"
    CANVAS_API_TOKEN: str = ""
    CANVAS_TIMEOUT: int = 30
    CANVAS_PER_PAGE: int = 100

    # Grading target
    TARGET_OUTCOME_NAME: str = "Current Score"
    TARGET_ASSIGNMENT_NAME: str = "Current Score Assignment"
    EXCLUDED_OUTCOME_KEYWORDS: str = "Homework Completion"  # comma separated

    # Write strategy
    PER_RECORD_THRESHOLD: int = 500
    MAX_WRITE_ATTEMPTS: int = 3
    WRITE_RETRY_DELAY_SECONDS: float = 0.0

    # Bulk job polling
    POLL_INTERVAL_SECONDS: float = 2.0
    POLL_TIMEOUT_SECONDS: float = 1200.0

    # Verification
    VERIFY_INTERVAL_SECONDS: float = 5.0
    VERIFY_MAX_ATTEMPTS: int = 50
    VERIFY_TOLERANCE: float = 0.001

    # Grade override propagation
    ENABLE_GRADE_OVERRIDE: bool = True
    OVERRIDE_SCALE_FACTOR: float = 25.0  # 0-4 outcome scale -> 0-100 override
    OVERRIDE_MAX_ATTEMPTS: int = 3
    OVERRIDE_DRAIN_TIMEOUT_SECONDS: float = 60.0

    # Run lease
    LEASE_TTL_SECONDS: int = 90  # renewed every third of the TTL while a run is alive
    RESUME_ON_STARTUP: bool = True

    # Assigns 0 to every student, never enable outside of test courses
    ZERO_OUT_TEST_MODE: bool = False

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    @property
    def excluded_keywords(self) -> List[str]:
        return [keyword.strip() for keyword in self.EXCLUDED_OUTCOME_KEYWORDS.split(",") if keyword.strip()]

    @field_validator("CANVAS_BASE_URL")
    @classmethod
    def validate_base_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("CANVAS_BASE_URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator(
        "PER_RECORD_THRESHOLD", "MAX_WRITE_ATTEMPTS", "VERIFY_MAX_ATTEMPTS",
        "OVERRIDE_MAX_ATTEMPTS", "LEASE_TTL_SECONDS"
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v


@dataclass(frozen=True)
class EngineConfig:
    """Immutable snapshot of the settings a single run depends on."""
    target_outcome_name: str = "Current Score"
    target_assignment_name: str = "Current Score Assignment"
    excluded_keywords: Tuple[str, ...] = ("Homework Completion",)
    per_record_threshold: int = 500
    max_write_attempts: int = 3
    write_retry_delay: float = 0.0
    poll_interval: float = 2.0
    poll_timeout: float = 1200.0
    verify_interval: float = 5.0
    verify_max_attempts: int = 50
    verify_tolerance: float = 0.001
    enable_grade_override: bool = True
    override_scale_factor: float = 25.0
    override_max_attempts: int = 3
    override_drain_timeout: float = 60.0
    lease_ttl: int = 90
    zero_out: bool = False

    @classmethod
    def from_settings(cls, settings: "Settings") -> "EngineConfig":
        return cls(
            target_outcome_name=settings.TARGET_OUTCOME_NAME,
            target_assignment_name=settings.TARGET_ASSIGNMENT_NAME,
            excluded_keywords=tuple(settings.excluded_keywords),
            per_record_threshold=settings.PER_RECORD_THRESHOLD,
            max_write_attempts=settings.MAX_WRITE_ATTEMPTS,
            write_retry_delay=settings.WRITE_RETRY_DELAY_SECONDS,
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            poll_timeout=settings.POLL_TIMEOUT_SECONDS,
            verify_interval=settings.VERIFY_INTERVAL_SECONDS,
            verify_max_attempts=settings.VERIFY_MAX_ATTEMPTS,
            verify_tolerance=settings.VERIFY_TOLERANCE,
            enable_grade_override=settings.ENABLE_GRADE_OVERRIDE,
            override_scale_factor=settings.OVERRIDE_SCALE_FACTOR,
            override_max_attempts=settings.OVERRIDE_MAX_ATTEMPTS,
            override_drain_timeout=settings.OVERRIDE_DRAIN_TIMEOUT_SECONDS,
            lease_ttl=settings.LEASE_TTL_SECONDS,
            zero_out=settings.ZERO_OUT_TEST_MODE,
        )


settings = Settings()
