import os
from functools import lru_cache

from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigError


class Settings(BaseModel):
    """Tunable thresholds for the analysis, read from the environment."""

    significance_level: float = Field(0.05, gt=0, lt=1)
    min_sample: int = Field(100, ge=1)
    min_spread: float = Field(100.0, gt=0)
    max_deviation: float = Field(5.0, gt=0)
    step_delay: float = Field(0.0, ge=0)
    producer_share: float = Field(50.0, ge=0, lt=100)
    http_timeout: float = Field(10.0, gt=0)
    log_level: str = "INFO"


# env var -> settings field
ENV_VARS = {
    "BENFORD_SIGNIFICANCE": "significance_level",
    "BENFORD_MIN_SAMPLE": "min_sample",
    "BENFORD_MIN_SPREAD": "min_spread",
    "BENFORD_MAX_DEVIATION": "max_deviation",
    "BENFORD_STEP_DELAY": "step_delay",
    "BENFORD_PRODUCER_SHARE": "producer_share",
    "BENFORD_HTTP_TIMEOUT": "http_timeout",
    "LOG_LEVEL": "log_level",
}


def load_settings(environ=None) -> Settings:
    environ = os.environ if environ is None else environ
    values = {
        field: environ[name]
        for name, field in ENV_VARS.items()
        if environ.get(name) not in (None, "")
    }
    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
