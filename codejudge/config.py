import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Base paths
BASE_DIR = Path.cwd()
DATA_DIR = BASE_DIR / "data"

PRODUCTION_SCRATCH_ROOT = Path("/tmp/code-execution")
LOCAL_SCRATCH_ROOT = BASE_DIR / "temp"

LOG_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CODEJUDGE_", env_file=".env", extra="ignore")

    environment: str = "development"

    # Workspaces
    scratch_root: Optional[Path] = None
    max_temp_file_age_minutes: int = 10
    cleanup_interval_minutes: int = 5
    sweep_every_executions: int = 100

    # Resource ceilings
    max_execution_time_ms: int = 10000
    max_memory_limit_kb: int = 256 * 1024
    compile_time_limit_ms: int = 10000
    compile_memory_limit_kb: int = 1024 * 1024
    memory_poll_interval_ms: int = 10

    # Output / request bounds
    max_output_bytes: int = 1024 * 1024
    max_diagnostic_length: int = 2000
    max_code_length: int = 50000
    max_input_size: int = 10 * 1024 * 1024  # 10MB

    # Service
    max_concurrent_judges: int = 4
    database_url: str = f"sqlite+aiosqlite:///{DATA_DIR}/codejudge.db"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def workspace_root(self) -> Path:
        if self.scratch_root is not None:
            return self.scratch_root
        return PRODUCTION_SCRATCH_ROOT if self.is_production else LOCAL_SCRATCH_ROOT

    @property
    def max_workspace_age_ms(self) -> int:
        return self.max_temp_file_age_minutes * 60 * 1000


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a stream handler to the ``codejudge`` logger once and set its level."""
    logger = logging.getLogger("codejudge")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
    logger.setLevel((level or os.environ.get("CODEJUDGE_LOG_LEVEL") or "INFO").upper())
