from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field, Field
from typing import Dict, List, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra="allow", env_file=".env", case_sensitive=True)

    DEBUG: bool = False
    PROJECT_NAME: str = "Driftwatch"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api"
    ENVIRONMENT: str = ""
    MONITORED_ENVIRONMENTS: List[str] = Field(
        default=["production"],
        description="Environments listed by the provider on every resync"
    )
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///./driftwatch.db"

    # External collaborators
    CONFIG_SOURCE_URL: str = "http://localhost:8081"
    RESOURCE_PROVIDER_URL: str = "http://localhost:8082"
    SCORER_URL: Optional[str] = None
    HTTP_TIMEOUT_SECONDS: float = 30.0
    HTTP_MAX_RETRIES: int = 3

    # Pipeline
    WORKER_COUNT: int = Field(default=8, description="Concurrent comparison workers")
    RESYNC_INTERVAL_SECONDS: int = Field(
        default=300,
        description="Full live-state resync period in seconds"
    )
    RESYNC_STALE_FACTOR: float = Field(
        default=2.0,
        description="Live state counts as stale after this many missed resync periods"
    )
    BACKOFF_BASE_SECONDS: float = 1.0
    BACKOFF_MAX_SECONDS: float = 60.0
    NORMALIZATION_RULES_FILE: Optional[str] = Field(
        default=None,
        description="JSON file with additional per-kind normalization rules"
    )

    # Scoring policy
    SCORE_HALF_POINT: float = 2.0
    SEVERITY_THRESHOLDS: Dict[str, float] = {"medium": 0.25, "high": 0.6, "critical": 0.85}
    PATH_WEIGHTS: Dict[str, float] = {
        "*securityContext*": 4.0,
        "*.privileged": 12.0,
        "*.hostNetwork": 12.0,
        "*.hostPID": 12.0,
        "*serviceAccountName": 3.0,
        "rules*": 4.0,
        "data.*": 2.0,
        "*.image": 2.0,
    }
    BENIGN_PATHS: List[str] = ["metadata.labels.*", "metadata.annotations.*"]
    BENIGN_DECAY: float = 0.2
    MISSING_SCORE: float = 0.7
    UNMANAGED_SCORE: float = 0.1
    MISSING_SEVERITY: str = "high"
    UNMANAGED_SEVERITY: str = "low"
    SEVERITY_FLOOR_RULES: Dict[str, str] = {
        "*.privileged": "critical",
        "*.hostNetwork": "critical",
        "*.hostPID": "critical",
        "*securityContext*": "high",
    }
    NON_REMEDIABLE_PATHS: List[str] = []
    NON_REMEDIABLE_KINDS: List[str] = ["Secret"]

    # Classification
    CLASSIFIER_STRATEGY: str = Field(default="rule", description="'rule' or 'model'")
    SCORER_TIMEOUT_SECONDS: float = 2.0
    SCORER_MIN_CONFIDENCE: float = 0.5

    # Correlation
    SUPPRESSION_WINDOW_SECONDS: int = 3600
    CORRELATION_WINDOW_SECONDS: int = 3600

    # Remediation
    AUTO_REMEDIATION_ENABLED: bool = True
    AUTO_REMEDIATION_CEILING: str = Field(
        default="high",
        description="Auto-apply only for severities strictly below this level"
    )
    REMEDIATION_MAX_RETRIES: int = 3
    REMEDIATION_RETRY_DELAY_SECONDS: float = 5.0
    REMEDIATION_LOCK_TIMEOUT_SECONDS: float = 300.0
    REMEDIATION_CONFLICT_DELAY_SECONDS: float = 10.0
    UNMANAGED_REMEDIATION: str = Field(default="none", description="'none' or 'propose'")

    # Event log
    EVENT_POLL_INTERVAL_SECONDS: float = 1.0
    EVENT_BATCH_SIZE: int = 100
    EVENT_MAX_DELIVERY_ATTEMPTS: int = Field(
        default=5,
        description="Handler attempts per event before the consumer moves past it"
    )

    # Retention
    ARCHIVE_RETENTION_DAYS: int = 7
    DRIFT_RETENTION_DAYS: int = 90
    EVENT_RETENTION_DAYS: int = 30

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(
        default="redis://localhost:6379/0",
        description="Celery broker URL (Redis recommended)"
    )
    CELERY_RESULT_BACKEND: str = Field(
        default="redis://localhost:6379/0",
        description="Celery result backend URL"
    )

    # Observability
    ENABLE_TRACING: bool = False
    OTLP_ENDPOINT: str = "localhost:4317"

    @computed_field
    @property
    def ASYNC_DATABASE_URL(self) -> str:
        """Rewrite a plain sqlite URL to its aiosqlite driver form"""
        if self.DATABASE_URL.startswith("sqlite:///"):
            return self.DATABASE_URL.replace("sqlite:///", "sqlite+aiosqlite:///")
        return self.DATABASE_URL


settings = Settings()
