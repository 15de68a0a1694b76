"""
Pipeline configuration.

Settings are resolved from model defaults, then an optional YAML/JSON file,
then ``TRUSTLENS_*`` environment variables. Every tunable the pipeline reads
(escalation threshold, weights, verdict thresholds, timeouts, retries, review
SLA, provider endpoints, adapter toggles) lives here.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from trustlens.models import AdapterName, FactorFamily, QueueName
from trustlens.utils.exceptions import ConfigurationError
from trustlens.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

ENV_PREFIX = "TRUSTLENS_"


class FactorWeights(BaseModel):
    """Base weights of the four scoring factors. Must sum to 1.0."""
    model_config = ConfigDict(extra="forbid")

    provenance: float = Field(default=0.35, ge=0.0)
    manipulation: float = Field(default=0.30, ge=0.0)
    visual_duplication: float = Field(default=0.20, ge=0.0)
    identity: float = Field(default=0.15, ge=0.0)

    @model_validator(mode="after")
    def check_sum(self) -> "FactorWeights":
        total = self.provenance + self.manipulation + self.visual_duplication + self.identity
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"weights must sum to 1.0, got {total:.6f}")
        return self

    def as_mapping(self) -> Dict[FactorFamily, float]:
        return {
            FactorFamily.PROVENANCE: self.provenance,
            FactorFamily.MANIPULATION: self.manipulation,
            FactorFamily.VISUAL_DUPLICATION: self.visual_duplication,
            FactorFamily.IDENTITY: self.identity,
        }


class VerdictThresholds(BaseModel):
    """Score bands: >= genuine is Genuine, >= suspicious is Suspicious, else Fake."""
    model_config = ConfigDict(extra="forbid")

    genuine: int = Field(default=70, ge=1, le=100)
    suspicious: int = Field(default=40, ge=0, le=99)

    @model_validator(mode="after")
    def check_order(self) -> "VerdictThresholds":
        if self.genuine <= self.suspicious:
            raise ValueError("genuine threshold must be above suspicious threshold")
        return self


class AdapterTimeouts(BaseModel):
    """Per-adapter timeouts in seconds."""
    model_config = ConfigDict(extra="forbid")

    cheap_stage: float = Field(default=5.0, gt=0.0, le=5.0, description="Aggregate budget of the cheap stage")
    provenance: float = Field(default=3.0, gt=0.0)
    perceptual_duplicate: float = Field(default=2.0, gt=0.0)
    manipulation: float = Field(default=45.0, gt=0.0)
    web_presence: float = Field(default=60.0, gt=0.0)
    identity: float = Field(default=30.0, gt=0.0)

    def for_adapter(self, adapter: AdapterName) -> float:
        return getattr(self, adapter.value)


class RetrySettings(BaseModel):
    """Attempt counts and backoff for queue jobs, adapter calls and webhooks."""
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    backoff_base: float = Field(default=2.0, ge=0.0)
    backoff_max: float = Field(default=60.0, ge=0.0)
    adapter_max_attempts: int = Field(default=2, ge=1)
    adapter_backoff_base: float = Field(default=0.5, ge=0.0)
    webhook_max_attempts: int = Field(default=3, ge=1)
    webhook_backoff_base: float = Field(default=2.0, ge=0.0)

    def queue_policy(self) -> RetryPolicy:
        return RetryPolicy(self.max_attempts, self.backoff_base, self.backoff_max)

    def adapter_policy(self) -> RetryPolicy:
        return RetryPolicy(self.adapter_max_attempts, self.adapter_backoff_base, self.backoff_max)

    def webhook_policy(self) -> RetryPolicy:
        return RetryPolicy(self.webhook_max_attempts, self.webhook_backoff_base, self.backoff_max)


class ConcurrencySettings(BaseModel):
    """Worker counts per queue class."""
    model_config = ConfigDict(extra="forbid")

    analysis: int = Field(default=5, ge=1)
    webhook: int = Field(default=10, ge=1)
    billing: int = Field(default=3, ge=1)
    adapter_threads: int = Field(default=16, ge=3, description="Threads shared by adapter calls")

    def for_queue(self, queue: QueueName) -> int:
        return getattr(self, queue.value)


class ProviderEndpoints(BaseModel):
    """HTTP endpoints of the evidence providers. Unset means unavailable."""
    model_config = ConfigDict(extra="forbid")

    provenance: Optional[str] = None
    perceptual_duplicate: Optional[str] = None
    manipulation: Optional[str] = None
    web_presence: Optional[str] = None
    identity: Optional[str] = None
    api_key: Optional[str] = None

    def for_adapter(self, adapter: AdapterName) -> Optional[str]:
        return getattr(self, adapter.value)


class AdapterToggles(BaseModel):
    """Feature flags; a disabled adapter produces a Skipped record."""
    model_config = ConfigDict(extra="forbid")

    provenance: bool = True
    perceptual_duplicate: bool = True
    manipulation: bool = True
    web_presence: bool = True
    identity: bool = True

    def is_enabled(self, adapter: AdapterName) -> bool:
        return getattr(self, adapter.value)


class HeuristicSettings(BaseModel):
    """Thresholds of the local cheap-stage heuristics."""
    model_config = ConfigDict(extra="forbid")

    aspect_ratio_limit: float = Field(default=3.0, gt=1.0)
    upscale_factor_limit: float = Field(default=1.5, gt=1.0)
    repeat_origin_window_minutes: int = Field(default=60, ge=1)
    repeat_origin_limit: int = Field(default=3, ge=1)


class PipelineSettings(BaseModel):
    """All externally tunable pipeline settings."""
    model_config = ConfigDict(extra="forbid")

    escalation_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    weights: FactorWeights = Field(default_factory=FactorWeights)
    verdict: VerdictThresholds = Field(default_factory=VerdictThresholds)
    timeouts: AdapterTimeouts = Field(default_factory=AdapterTimeouts)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    providers: ProviderEndpoints = Field(default_factory=ProviderEndpoints)
    toggles: AdapterToggles = Field(default_factory=AdapterToggles)
    heuristics: HeuristicSettings = Field(default_factory=HeuristicSettings)
    review_sla_hours: float = Field(default=48.0, gt=0.0)
    lease_seconds: float = Field(default=300.0, gt=0.0)
    finished_retention: int = Field(default=1000, ge=0, description="Completed or cancelled entries kept per queue")
    database: str = Field(default="trustlens.db", description="SQLite path, ':memory:' or SQLAlchemy URL")
    storage_root: str = Field(default="./artifacts")
    reference_base_url: str = Field(default="http://localhost:8000/analysis")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineSettings":
        """Validate a settings mapping, raising ConfigurationError on bad values."""
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            first = e.errors()[0]
            key = ".".join(str(part) for part in first["loc"]) or "settings"
            raise ConfigurationError(key, first["msg"]) from e

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PipelineSettings":
        """Load settings from a YAML or JSON file."""
        return cls.from_dict(_read_settings_file(Path(path)))

    @classmethod
    def load(
        cls,
        path: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "PipelineSettings":
        """Resolve settings from defaults, an optional file and the environment.

        Args:
            path: Optional YAML/JSON settings file
            environ: Environment mapping (default: os.environ)

        Returns:
            Validated PipelineSettings

        Raises:
            ConfigurationError: If the file is unreadable or any value is invalid
        """
        data: Dict[str, Any] = _read_settings_file(Path(path)) if path else {}
        environ = os.environ if environ is None else environ

        for env_name, dotted in ENV_VARS.items():
            value = environ.get(env_name)
            if value is None or value == "":
                continue
            _set_path(data, dotted, value)
            logger.debug(f"Setting {dotted} from {env_name}")

        return cls.from_dict(data)


def _read_settings_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(str(path), "settings file does not exist")

    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            elif path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                raise ConfigurationError(str(path), f"unsupported settings format: {path.suffix}")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(str(path), f"cannot parse settings file: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "settings file must contain a mapping")
    return data


def _set_path(data: Dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def _build_env_vars() -> Dict[str, str]:
    env = {
        "ESCALATION_THRESHOLD": "escalation_threshold",
        "REVIEW_SLA_HOURS": "review_sla_hours",
        "LEASE_SECONDS": "lease_seconds",
        "FINISHED_RETENTION": "finished_retention",
        "DATABASE": "database",
        "STORAGE_ROOT": "storage_root",
        "REFERENCE_URL": "reference_base_url",
        "GENUINE_THRESHOLD": "verdict.genuine",
        "SUSPICIOUS_THRESHOLD": "verdict.suspicious",
        "CHEAP_STAGE_TIMEOUT": "timeouts.cheap_stage",
        "MAX_ATTEMPTS": "retry.max_attempts",
        "BACKOFF_BASE": "retry.backoff_base",
        "BACKOFF_MAX": "retry.backoff_max",
        "ADAPTER_MAX_ATTEMPTS": "retry.adapter_max_attempts",
        "WEBHOOK_MAX_ATTEMPTS": "retry.webhook_max_attempts",
        "PROVIDER_API_KEY": "providers.api_key",
    }
    for family in FactorFamily:
        env[f"WEIGHT_{family.name}"] = f"weights.{family.value}"
    for adapter in AdapterName:
        env[f"{adapter.name}_TIMEOUT"] = f"timeouts.{adapter.value}"
        env[f"{adapter.name}_URL"] = f"providers.{adapter.value}"
        env[f"ENABLE_{adapter.name}"] = f"toggles.{adapter.value}"
    for queue in QueueName:
        env[f"{queue.name}_CONCURRENCY"] = f"concurrency.{queue.value}"
    return {f"{ENV_PREFIX}{name}": dotted for name, dotted in env.items()}


ENV_VARS = _build_env_vars()
