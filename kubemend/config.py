"""
Configuration for the kubemend operator.

Every group reads from the environment (and an optional ``.env`` file) under
the ``KUBEMEND_`` prefix, e.g. ``KUBEMEND_SAFETY_DEFAULT_COOLDOWN_SECONDS=600``.
"""

from enum import Enum
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Custom resource coordinates
CRD_GROUP = "kubemend.io"
CRD_VERSION = "v1alpha1"
POLICY_PLURAL = "healingpolicies"
ACTION_PLURAL = "healingactions"

# Labels and annotations
LABEL_MANAGED_BY = f"{CRD_GROUP}/managed-by"
LABEL_POLICY = f"{CRD_GROUP}/policy-name"
LABEL_ACTION_TYPE = f"{CRD_GROUP}/action-type"
LABEL_DEDUPE_KEY = f"{CRD_GROUP}/dedupe-key"
LABEL_SEQUENCE = f"{CRD_GROUP}/sequence"
ANNOTATION_PROTECTED = f"{CRD_GROUP}/protected"
ANNOTATION_HEALING_DISABLED = f"{CRD_GROUP}/healing-disabled"
ANNOTATION_APPROVED_BY = f"{CRD_GROUP}/approved-by"
ANNOTATION_ROLLBACK = f"{CRD_GROUP}/rollback"
ANNOTATION_RESTARTED_BY = f"{CRD_GROUP}/restarted-by"
ANNOTATION_RESTARTED_AT = "kubectl.kubernetes.io/restartedAt"
MANAGER_NAME = "kubemend"


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    JSON = "json"
    TEXT = "text"


def _settings_config(prefix: str) -> SettingsConfigDict:
    return SettingsConfigDict(
        env_prefix=prefix,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class SafetySettings(BaseSettings):
    """Process-wide safety defaults; a policy may tighten them."""
    default_cooldown_seconds: float = Field(default=300.0, ge=0)
    default_max_concurrent_actions: int = Field(default=1, ge=1)
    default_max_actions_per_window: int = Field(default=100, ge=1)
    default_window_seconds: float = Field(default=3600.0, gt=0)
    protected_namespaces: List[str] = Field(
        default=["kube-system", "kube-public", "kube-node-lease", "cert-manager"]
    )
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_timeout_seconds: float = Field(default=300.0, ge=0)
    cleanup_interval_seconds: float = Field(default=3600.0, gt=0)

    model_config = _settings_config("KUBEMEND_SAFETY_")


class RemediationSettings(BaseSettings):
    """Retry and timeout behaviour of the remediation engine."""
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=30.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_seconds: float = Field(default=1800.0, ge=0)
    call_timeout_seconds: float = Field(default=300.0, gt=0)
    enable_rollback: bool = True

    model_config = _settings_config("KUBEMEND_REMEDIATION_")


class AISettings(BaseSettings):
    """Optional AI analyzer. An empty provider disables it."""
    provider: str = Field(default="")
    endpoint: str = Field(default="http://ollama:11434")
    model: str = Field(default="llama2:13b")
    timeout_seconds: float = Field(default=30.0, gt=0)
    min_confidence: float = Field(default=0.7)

    @field_validator('provider')
    @classmethod
    def validate_provider(cls, v):
        v = (v or "").strip().lower()
        if v not in ("", "ollama"):
            raise ValueError(f"Unsupported AI provider: {v}")
        return v

    @field_validator('min_confidence')
    @classmethod
    def validate_min_confidence(cls, v):
        if v < 0.0 or v > 1.0:
            raise ValueError('min_confidence must be between 0.0 and 1.0')
        return v

    @field_validator('endpoint')
    @classmethod
    def validate_endpoint(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError('AI endpoint must start with http:// or https://')
        return v.rstrip('/')

    @property
    def enabled(self) -> bool:
        return bool(self.provider)

    model_config = _settings_config("KUBEMEND_AI_")


class PrometheusSettings(BaseSettings):
    """Metrics backend used by the default collector."""
    url: str = Field(default="http://prometheus.monitoring:9090")
    timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError('Prometheus URL must start with http:// or https://')
        return v.rstrip('/')

    model_config = _settings_config("KUBEMEND_PROMETHEUS_")


class RetentionSettings(BaseSettings):
    """Retention of the in-process ledgers."""
    record_retention_seconds: float = Field(default=86400.0, gt=0)
    snapshot_retention_seconds: float = Field(default=3600.0, gt=0)
    sweep_interval_seconds: float = Field(default=300.0, gt=0)
    sweep_batch_size: int = Field(default=500, ge=1)

    model_config = _settings_config("KUBEMEND_RETENTION_")


class OperatorSettings(BaseSettings):
    """Top-level settings combining every component group."""

    log_level: LogLevel = Field(default=LogLevel.INFO, validation_alias=AliasChoices("KUBEMEND_LOG_LEVEL", "LOG_LEVEL", "log_level"))
    log_format: LogFormat = Field(default=LogFormat.JSON)
    dry_run: bool = Field(default=False)
    watch_namespace: Optional[str] = Field(default=None)
    evaluation_interval_seconds: float = Field(default=60.0, gt=0)
    monitor_interval_seconds: float = Field(default=300.0, gt=0)
    action_requeue_seconds: float = Field(default=30.0, gt=0)
    max_actions_per_pass: int = Field(default=5, ge=1)

    safety: SafetySettings = Field(default_factory=SafetySettings)
    remediation: RemediationSettings = Field(default_factory=RemediationSettings)
    ai: AISettings = Field(default_factory=AISettings)
    prometheus: PrometheusSettings = Field(default_factory=PrometheusSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)

    model_config = _settings_config("KUBEMEND_")


def load_settings(**overrides) -> OperatorSettings:
    """Build settings from the environment, applying explicit overrides."""
    return OperatorSettings(**overrides)
