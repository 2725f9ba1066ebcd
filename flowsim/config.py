"""Settings for the workflow simulator service.

Every field of ``AppConfig`` can be overridden by an environment variable
named ``FLOWSIM_<FIELD>`` (``FLOWSIM_STEP_CEILING=50``). List fields take
comma-separated values.
"""

import json
import os
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, field_validator
from enum import Enum

ENV_PREFIX = "FLOWSIM_"

DEFAULT_SAMPLE_PAYLOAD = '{"order_id": "ORD-2024-001", "amount": 8500}'


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class HttpMode(str, Enum):
    """How API call nodes reach the network."""
    SIMULATED = "simulated"
    LIVE = "live"


class AppConfig(BaseModel):
    """Service, simulation and logging settings."""

    app_name: str = "Workflow Simulator"
    app_version: str = "1.0.0"
    debug: bool = False

    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = False

    step_ceiling: int = Field(default=100, description="Queue dispatches allowed per run before truncation")
    default_payload: str = Field(
        default=DEFAULT_SAMPLE_PAYLOAD,
        description="Used when neither the caller nor the Start node supplies a parsable payload"
    )
    http_mode: HttpMode = HttpMode.SIMULATED
    default_http_timeout_ms: int = Field(default=30000, description="For API call nodes without a timeout")
    max_loop_concurrency: int = Field(default=10, description="Worker threads for iteration-mode loops")

    log_level: LogLevel = LogLevel.INFO
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s%(context_suffix)s"
    log_structured: bool = Field(default=False, description="One JSON object per log record")
    log_file: Optional[str] = None
    log_max_size: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    slow_request_threshold: float = Field(default=5.0, description="Seconds before a request is logged as slow")
    enable_performance_monitoring: bool = True

    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_methods: List[str] = Field(default_factory=lambda: ["GET", "POST"])

    @field_validator('step_ceiling', 'default_http_timeout_ms', 'max_loop_concurrency')
    @classmethod
    def at_least_one(cls, v, info):
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    @field_validator('default_payload')
    @classmethod
    def payload_must_parse(cls, v):
        """The fallback payload is the last resort, so it has to be JSON."""
        try:
            json.loads(v)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Default payload is not valid JSON: {e}")
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def upper_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator('http_mode', mode='before')
    @classmethod
    def lower_http_mode(cls, v):
        return v.lower() if isinstance(v, str) else v

    @property
    def is_production(self) -> bool:
        return not (self.debug or self.reload)

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Keyword arguments for ``uvicorn.run``."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'AppConfig':
        """Build settings from ``FLOWSIM_*`` variables, leaving the rest at their defaults."""
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if field.annotation == List[str]:
                overrides[name] = [item.strip() for item in raw.split(',') if item.strip()]
            else:
                overrides[name] = raw
        return cls(**overrides)


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide settings, reading the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load ``config_file`` (or ``./.env``) into the environment, then rebuild the settings."""
    global _config

    from dotenv import load_dotenv

    env_file = config_file if config_file and os.path.exists(config_file) else '.env'
    if os.path.exists(env_file):
        load_dotenv(env_file)

    _config = AppConfig.from_env()
    return _config


def reset_config():
    """Forget the cached settings (used by tests)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Checks that need the filesystem or span several fields.

    Raises:
        ValueError: Listing every problem found
    """
    problems = []

    log_dir = os.path.dirname(config.log_file) if config.log_file else ""
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            problems.append(f"Cannot create log directory {log_dir}: {e}")

    if config.step_ceiling > 100000:
        problems.append("Step ceiling above 100000 defeats its purpose as a runaway guard")

    if config.max_loop_concurrency > 256:
        problems.append("Loop concurrency above 256 threads is not supported")

    if problems:
        raise ValueError(f"Configuration validation failed: {'; '.join(problems)}")


def get_development_config() -> AppConfig:
    return AppConfig(debug=True, reload=True, log_level=LogLevel.DEBUG)


def get_production_config() -> AppConfig:
    return AppConfig(cors_origins=[])


def get_testing_config() -> AppConfig:
    """Quiet logging, simulated HTTP and a small thread pool."""
    return AppConfig(
        debug=True,
        log_level=LogLevel.WARNING,
        http_mode=HttpMode.SIMULATED,
        max_loop_concurrency=4
    )
