import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    # Catalog provider (TMDB)
    tmdb_api_key: str = Field(default="", alias="TMDB_API_KEY")
    tmdb_bearer_token: str = Field(default="", alias="TMDB_BEARER_TOKEN")
    tmdb_base_url: str = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_BASE_URL"
    )
    tmdb_timeout: float = Field(default=10.0, alias="TMDB_TIMEOUT")

    # Retry policy
    retry_max_attempts: int = Field(default=3, ge=1, alias="RETRY_MAX_ATTEMPTS")
    retry_base_delay: float = Field(default=1.0, ge=0, alias="RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=10.0, ge=0, alias="RETRY_MAX_DELAY")
    retry_jitter: bool = Field(default=True, alias="RETRY_JITTER")

    # Circuit breaker
    circuit_failure_threshold: int = Field(
        default=5, ge=1, alias="CIRCUIT_FAILURE_THRESHOLD"
    )
    circuit_reset_timeout: float = Field(
        default=60.0, gt=0, alias="CIRCUIT_RESET_TIMEOUT"
    )

    # Response cache
    cache_sweep_interval_minutes: int = Field(
        default=30, ge=1, alias="CACHE_SWEEP_INTERVAL"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./moviehub.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # HTTP server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=3000, alias="API_PORT")
    debug: bool = Field(default=False, alias="DEBUG")

    @property
    def tmdb_credential(self) -> str:
        """Bearer credential for the provider, whichever variable carries it."""
        return self.tmdb_api_key or self.tmdb_bearer_token


global_settings = Settings(**os.environ)
