"""refetch configuration — loaded from .env via pydantic-settings."""

from pathlib import Path

from pydantic_settings import BaseSettings
from pydantic import Field


class RefetchSettings(BaseSettings):
    """All refetch configuration. Reads from .env file and REFETCH_* environment variables."""

    # --- Logging ---
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="console",
        description="Log format: 'console' for dev, 'json' for production",
    )

    # --- Event trail / persistence ---
    trace_dir: Path = Field(
        default=Path.home() / ".refetch" / "traces",
        description="Directory for persisted <fetch_id>.jsonl event traces",
    )
    persist_dir: Path = Field(
        default=Path.home() / ".refetch" / "storage",
        description="Directory used by JsonFileStorage for persisted query data",
    )

    # --- Query defaults (all durations in milliseconds) ---
    enabled: bool = Field(default=True, description="Queries run automatically unless disabled")
    lazy: bool = Field(default=False, description="Queries wait for an explicit fetch()")
    suspense: bool = Field(default=False, description="Expose the initial fetch for suspension")
    swr: bool = Field(default=True, description="Keep stale data visible while revalidating")
    stale_time: int = Field(default=0, description="ms until fetched data counts as stale")
    ttl: int = Field(default=1000, description="ms an unreferenced instance/bucket survives")
    retry: bool | int = Field(default=False, description="Retry failed fetches (bool or retry count)")
    max_retries: int = Field(default=3, description="Retry budget when retry=True")
    delay_unit: int = Field(default=1000, description="Base of the exponential backoff (ms)")
    max_retry_delay: int = Field(default=30000, description="Backoff cap (ms)")
    refetch_on_mount: bool = Field(default=True)
    refetch_on_focus: bool = Field(default=True)
    refetch_on_reconnect: bool = Field(default=True)
    refetch_interval_in_background: bool = Field(default=False)
    broadcast: bool = Field(default=False, description="Post invalidations to the cross-tab channel")
    debug: bool = Field(default=False, description="Verbose per-query debug traces")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "REFETCH_",
        "extra": "ignore",
    }


# Module singleton, import this everywhere
settings = RefetchSettings()
