"""
Application Configuration

Central configuration for the Tracetap collector.
"""

from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Optional, Dict
from enum import Enum


class Environment(str, Enum):
    """Deployment environments."""
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def _env_bool(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _deployment_map_from_env() -> Dict[str, str]:
    """Collect AZURE_DEPLOYMENT_<MODEL> variables into a model -> deployment map.

    The variable suffix is the model name upper-cased with dots and dashes
    turned into underscores (AZURE_DEPLOYMENT_GPT_4O covers "gpt-4o").
    """
    prefix = "AZURE_DEPLOYMENT_"
    return {
        key[len(prefix):]: value
        for key, value in os.environ.items()
        if key.startswith(prefix) and value
    }


@dataclass
class Config:
    """Application configuration."""

    # Environment
    env: Environment = Environment.DEVELOPMENT
    debug: bool = True
    log_level: str = "INFO"

    # Server
    host: str = "127.0.0.1"
    port: int = 8080

    # Storage
    data_dir: str = field(default_factory=lambda: os.path.join(os.path.expanduser("~"), ".tracetap"))
    db_path: str = ""
    max_traces: int = 10_000
    max_logs: int = 10_000
    max_metrics: int = 10_000

    # Proxy
    log_content: bool = True
    upstream_timeout_seconds: float = 300.0

    # Providers
    ollama_host: str = "localhost"
    ollama_port: int = 11434
    azure_resource: Optional[str] = None
    azure_api_version: str = "2024-02-01"
    azure_deployments: Dict[str, str] = field(default_factory=dict)

    # Pricing overlay (LiteLLM model_prices JSON)
    pricing_file: Optional[str] = None

    def __post_init__(self):
        if not self.db_path:
            self.db_path = os.path.join(self.data_dir, "data.db")

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        env_str = os.getenv("ENV", "development").lower()
        env = Environment(env_str) if env_str in [e.value for e in Environment] else Environment.DEVELOPMENT
        data_dir = os.getenv("DATA_DIR") or os.path.join(os.path.expanduser("~"), ".tracetap")

        return cls(
            env=env,
            debug=env == Environment.DEVELOPMENT,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            host=os.getenv("HOST", "127.0.0.1"),
            port=int(os.getenv("PORT", "8080")),
            data_dir=data_dir,
            db_path=os.getenv("DB_PATH", os.path.join(data_dir, "data.db")),
            max_traces=int(os.getenv("MAX_TRACES", "10000")),
            max_logs=int(os.getenv("MAX_LOGS", "10000")),
            max_metrics=int(os.getenv("MAX_METRICS", "10000")),
            log_content=_env_bool("LOG_CONTENT"),
            upstream_timeout_seconds=float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "300")),
            ollama_host=os.getenv("OLLAMA_HOST", "localhost"),
            ollama_port=int(os.getenv("OLLAMA_PORT", "11434")),
            azure_resource=os.getenv("AZURE_OPENAI_RESOURCE") or None,
            azure_api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-01"),
            azure_deployments=_deployment_map_from_env(),
            pricing_file=os.getenv("PRICING_FILE") or None,
        )


# Global config instance
config = Config.from_env()
