"""Global configuration, loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class ProcHandleSettings(BaseSettings):
    # Quiet period before the usage sampler cache is dropped
    sampler_clear_delay: float = 1.1
    # How long close() waits after SIGTERM before force-killing
    close_grace_period: float = 5.0
    # How long kill() waits for the exit to be observed
    kill_settle_timeout: float = 1.0

    # Viewer settings
    poll_rate: float = 1.0
    log_level: str = "INFO"
    log_file: Path | None = None

    model_config = {"env_prefix": "PROCHANDLE_"}


settings = ProcHandleSettings()
