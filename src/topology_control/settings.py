from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """
    Application configuration loaded from Environment Variables or .env file.
    Reconciliation policy knobs live here rather than as inferred defaults in the driver.
    """

    CONFIG_FILE: Path = Path("topology.yaml")
    POLLING_INTERVAL: int = 10
    CONTROL_INTERVAL: float = 0.1

    DOCKER_BASE_URL: str | None = None  # Optional: Connect to remote docker
    DOCKER_TIMEOUT: int = 30
    NETWORK_PREFIX: str = "topology-"

    # Passes a workload may stay below its desired ready count before it is Degraded
    RETRY_BUDGET: int = 3
    APPLY_RETRIES: int = 3
    BACKOFF_BASE: float = 0.5
    BACKOFF_MAX: float = 8.0
    APPLY_TIMEOUT: float = 60.0
    MAX_PARALLEL_NAMESPACES: int = 4

    METRICS_PATH: str = "/metrics"
    TARGETS_FILE: Path | None = None  # Prometheus file_sd output, written after each pass

    model_config = SettingsConfigDict(env_prefix="TOPOLOGY_", env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> AppSettings:
    """
    Creates a singleton instance of AppSettings.
    Uses lru_cache to ensure the .env file is read only once.
    """
    return AppSettings()
