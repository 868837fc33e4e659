"""Runtime settings, read from the environment (and a local .env file if present)."""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from srebench.paths import LOGS_DIR, RESULTS_DIR

load_dotenv()


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Settings(BaseModel):
    # polling
    poll_interval: float = Field(default_factory=lambda: _env_float("SREBENCH_POLL_INTERVAL", 5.0))
    poll_jitter: float = Field(default_factory=lambda: _env_float("SREBENCH_POLL_JITTER", 0.2))

    # observation
    observation_workers: int = Field(default_factory=lambda: _env_int("SREBENCH_OBSERVATION_WORKERS", 8))
    observation_timeout: float = Field(default_factory=lambda: _env_float("SREBENCH_OBSERVATION_TIMEOUT", 10.0))
    observation_retries: int = Field(default_factory=lambda: _env_int("SREBENCH_OBSERVATION_RETRIES", 2))
    prometheus_url: str | None = Field(default_factory=lambda: os.getenv("PROMETHEUS_URL"))

    # cluster
    probe_timeout: float = Field(default_factory=lambda: _env_float("SREBENCH_PROBE_TIMEOUT", 30.0))
    probe_attempts: int = Field(default_factory=lambda: _env_int("SREBENCH_PROBE_ATTEMPTS", 5))
    request_timeout: float = Field(default_factory=lambda: _env_float("SREBENCH_REQUEST_TIMEOUT", 10.0))

    # applier
    apply_max_attempts: int = Field(default_factory=lambda: _env_int("SREBENCH_APPLY_MAX_ATTEMPTS", 5))
    apply_backoff_initial: float = Field(default_factory=lambda: _env_float("SREBENCH_APPLY_BACKOFF", 0.5))
    apply_backoff_max: float = Field(default_factory=lambda: _env_float("SREBENCH_APPLY_BACKOFF_MAX", 8.0))

    # output
    results_dir: Path = Field(default_factory=lambda: Path(os.getenv("SREBENCH_RESULTS_DIR", str(RESULTS_DIR))))
    logs_dir: Path = Field(default_factory=lambda: Path(os.getenv("SREBENCH_LOGS_DIR", str(LOGS_DIR))))

    # conductor api
    api_hostname: str = Field(default_factory=lambda: os.getenv("API_HOSTNAME", "127.0.0.1"))
    api_port: int = Field(default_factory=lambda: _env_int("API_PORT", 8000))


def get_settings(**overrides) -> Settings:
    settings = Settings()
    return settings.model_copy(update=overrides) if overrides else settings
