"""Configuration management for gearshift."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "GEARSHIFT_",
    }

    # Path guard; empty means the process working directory
    allowed_roots: list[str] = []

    # State document
    state_file_name: str = ".gearshift-state.json"
    max_state_bytes: int = 10 * 1024 * 1024  # documents above this are rejected unread
    max_backups: int = 3

    # Stage execution
    max_retries: int = 2  # attempts per gear
    retry_backoff_base: float = 2.0  # exponential backoff base
    poll_interval: float = 1.0  # seconds between gears in cruise control

    # Cruise control
    project_dir: str = "."
    route: str | None = None
    clarifications_strategy: str = "defer"
    implementation_scope: str = "none"
    pause_between_gears: bool = False

    # Roadmap planning inputs, relative to project_dir
    context_file: str = "gearshift-context.yaml"
    roadmap_file: str = ""  # empty: use the items recorded in state

    # External stage command
    stage_command: str = "gearshift-stage"
    stage_timeout: int = 1800  # 30 min per gear

    # Logging
    log_level: str = "INFO"
