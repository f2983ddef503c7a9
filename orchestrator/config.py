"""
Orchestrator Settings

All tunables are read from environment variables (a .env file is loaded by
the entry points). Durations are in seconds.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


class OrchestratorSettings(BaseModel):
    """Runtime configuration for the orchestrator service"""

    # Session monitoring
    poll_interval: float = Field(default=10.0, gt=0)
    session_log_limit: int = Field(default=1000, ge=1)
    session_timeout: Optional[float] = Field(default=None, gt=0)

    # Agent health
    offline_threshold: float = Field(default=300.0, gt=0)
    health_sweep_interval: float = Field(default=60.0, gt=0)

    # Queue and housekeeping
    queue_drain_interval: float = Field(default=30.0, gt=0)
    session_retention_days: float = Field(default=30.0, gt=0)
    session_cleanup_interval: float = Field(default=24 * 3600.0, gt=0)
    init_default_agents: bool = False

    # Execution gateway
    gateway_url: str = "http://localhost:3001"
    gateway_api_key: str = ""
    gateway_timeout: float = Field(default=30.0, gt=0)
    workspace_dir: str = "/workspace"

    # RabbitMQ
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"

    # Admin API / logging
    admin_api_key: Optional[str] = None
    log_level: str = "INFO"
    log_dir: str = "./logs"

    @property
    def offline_threshold_ms(self) -> float:
        return self.offline_threshold * 1000.0

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        """
        Build settings from environment variables.

        Returns:
            OrchestratorSettings with defaults for anything unset
        """
        defaults = cls()
        return cls(
            poll_interval=_env_float("SESSION_POLL_INTERVAL", defaults.poll_interval),
            session_log_limit=int(os.getenv("SESSION_LOG_LIMIT", str(defaults.session_log_limit))),
            session_timeout=_env_float("SESSION_TIMEOUT", defaults.session_timeout),
            offline_threshold=_env_float("AGENT_OFFLINE_THRESHOLD", defaults.offline_threshold),
            health_sweep_interval=_env_float("HEALTH_SWEEP_INTERVAL", defaults.health_sweep_interval),
            queue_drain_interval=_env_float("QUEUE_DRAIN_INTERVAL", defaults.queue_drain_interval),
            session_retention_days=_env_float("SESSION_RETENTION_DAYS", defaults.session_retention_days),
            session_cleanup_interval=_env_float(
                "SESSION_CLEANUP_INTERVAL", defaults.session_cleanup_interval
            ),
            init_default_agents=_env_bool("INIT_DEFAULT_AGENTS", defaults.init_default_agents),
            gateway_url=os.getenv("EXECUTION_GATEWAY_URL", defaults.gateway_url),
            gateway_api_key=os.getenv("EXECUTION_GATEWAY_API_KEY", defaults.gateway_api_key),
            gateway_timeout=_env_float("EXECUTION_GATEWAY_TIMEOUT", defaults.gateway_timeout),
            workspace_dir=os.getenv("WORKSPACE_DIR", defaults.workspace_dir),
            rabbitmq_host=os.getenv("RABBITMQ_HOST", defaults.rabbitmq_host),
            rabbitmq_port=int(os.getenv("RABBITMQ_PORT", str(defaults.rabbitmq_port))),
            rabbitmq_user=os.getenv("RABBITMQ_USER", defaults.rabbitmq_user),
            rabbitmq_password=os.getenv("RABBITMQ_PASSWORD", defaults.rabbitmq_password),
            admin_api_key=os.getenv("ADMIN_API_KEY") or None,
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
            log_dir=os.getenv("LOG_DIR", defaults.log_dir),
        )
