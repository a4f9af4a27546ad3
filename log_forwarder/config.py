"""Configuration: frozen dataclass built from YAML file <- env vars <- CLI args."""

import argparse
import logging
import os
import re
import socket
from dataclasses import dataclass, field, fields

import yaml

from log_forwarder.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_ENDPOINT = "http://localhost:4318/v1/logs"
DEFAULT_SERVICE_NAME = "otlp-log-forwarder"
START_POSITIONS = ("end", "beginning", "resume")

_URL_RE = re.compile(r"^https?://[^\s/$.?#].[^\s]*$")


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def _parse_list(value) -> list[str]:
    if isinstance(value, str):
        return [p.strip() for p in value.split(",") if p.strip()]
    return [str(p).strip() for p in value if str(p).strip()]


def detect_hostname() -> str:
    try:
        name = socket.gethostname()
    except OSError:
        name = ""
    return name or "unknown"


@dataclass(frozen=True)
class Config:
    log_files: tuple[str, ...] = ()
    endpoint: str = DEFAULT_ENDPOINT
    service_name: str = DEFAULT_SERVICE_NAME
    host_name: str = ""
    rate_limit: int = 100
    batch_size: int = 100
    flush_interval: float = 1.0
    max_pending_batches: int = 50
    export_workers: int = 4
    max_retries: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    backoff_jitter: float = 0.2
    request_timeout: float = 10.0
    poll_interval: float = 0.5
    max_read_bytes: int = 1024 * 1024
    ingress_capacity: int = 10000
    ingress_timeout: float = 1.0
    shutdown_grace: float = 5.0
    start_position: str = "end"
    offsets_file: str = ".offsets.json"
    drain_rotated: bool = True
    skip_blank_lines: bool = True
    detect_severity: bool = True
    use_notifications: bool = True
    metrics_interval: float = 30.0
    headers: dict = field(default_factory=dict)

    @property
    def effective_batch_size(self) -> int:
        """Batch size capped at the rate limiter's bucket capacity."""
        return min(self.batch_size, self.rate_limit)


# key -> (env var, converter)
_FIELD_SOURCES = {
    "log_files": ("LOG_FILES", _parse_list),
    "endpoint": ("OTLP_ENDPOINT", str),
    "service_name": ("SERVICE_NAME", str),
    "host_name": ("HOST_NAME", str),
    "rate_limit": ("RATE_LIMIT", int),
    "batch_size": ("BATCH_SIZE", int),
    "flush_interval": ("FLUSH_INTERVAL", float),
    "max_pending_batches": ("MAX_PENDING_BATCHES", int),
    "export_workers": ("EXPORT_WORKERS", int),
    "max_retries": ("MAX_RETRIES", int),
    "backoff_base": ("BACKOFF_BASE", float),
    "backoff_max": ("BACKOFF_MAX", float),
    "backoff_jitter": ("BACKOFF_JITTER", float),
    "request_timeout": ("REQUEST_TIMEOUT", float),
    "poll_interval": ("POLL_INTERVAL", float),
    "max_read_bytes": ("MAX_READ_BYTES", int),
    "ingress_capacity": ("INGRESS_CAPACITY", int),
    "ingress_timeout": ("INGRESS_TIMEOUT", float),
    "shutdown_grace": ("SHUTDOWN_GRACE", float),
    "start_position": ("START_POSITION", str),
    "offsets_file": ("OFFSETS_FILE", str),
    "drain_rotated": ("DRAIN_ROTATED", _parse_bool),
    "skip_blank_lines": ("SKIP_BLANK_LINES", _parse_bool),
    "detect_severity": ("DETECT_SEVERITY", _parse_bool),
    "use_notifications": ("USE_NOTIFICATIONS", _parse_bool),
    "metrics_interval": ("METRICS_INTERVAL", float),
}


def load_yaml_config(path: str | None) -> dict:
    """Load settings from a YAML file. Returns empty dict if no path or no file."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.info("Loaded YAML config from %s", path)
    return data


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tail log files and ship them to an OTLP endpoint")
    parser.add_argument("--config", default=None,
                        help=f"Path to YAML config file (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--log-files", nargs="+", default=None,
                        help="Paths to log files to watch")
    parser.add_argument("--endpoint", default=None, help="OTLP/HTTP logs endpoint")
    parser.add_argument("--service-name", default=None)
    parser.add_argument("--host-name", default=None)
    parser.add_argument("--rate-limit", type=int, default=None,
                        help="Maximum logs per second")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--flush-interval", type=float, default=None)
    parser.add_argument("--start-position", choices=START_POSITIONS, default=None)
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    parser.add_argument("--install-service", action="store_true", default=False,
                        help="Write a systemd unit file and exit")
    return parser


def _convert(key: str, value):
    _, converter = _FIELD_SOURCES[key]
    try:
        return converter(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from e


def load_config(cli_args, yaml_data: dict, environ=None) -> Config:
    """Build Config from YAML data, env vars, then CLI args (highest priority)."""
    if environ is None:
        environ = os.environ

    known = {f.name for f in fields(Config)}
    unknown = set(yaml_data) - known
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))

    kwargs: dict = {}
    for key, value in yaml_data.items():
        if key in _FIELD_SOURCES and value is not None:
            kwargs[key] = _convert(key, value)

    headers = yaml_data.get("headers") or {}
    if not isinstance(headers, dict):
        raise ConfigError("headers must be a mapping")
    kwargs["headers"] = {str(k): str(v) for k, v in headers.items()}

    for key, (env_var, _) in _FIELD_SOURCES.items():
        if env_var in environ:
            kwargs[key] = _convert(key, environ[env_var])

    if cli_args is not None:
        for key in ("log_files", "endpoint", "service_name", "host_name",
                    "rate_limit", "batch_size", "flush_interval", "start_position"):
            value = getattr(cli_args, key, None)
            if value is not None:
                kwargs[key] = _convert(key, value)

    if "log_files" in kwargs:
        kwargs["log_files"] = tuple(os.path.abspath(p) for p in kwargs["log_files"])
    if not kwargs.get("host_name"):
        kwargs["host_name"] = detect_hostname()

    return Config(**kwargs)


def validate_config(config: Config):
    """Raise ConfigError if the config cannot drive the pipeline."""
    if not config.log_files:
        raise ConfigError("At least one log file must be configured")
    if not config.endpoint.startswith(("http://", "https://")):
        raise ConfigError("Endpoint URL must start with http:// or https://")
    if not _URL_RE.match(config.endpoint):
        raise ConfigError(f"Invalid endpoint URL format: {config.endpoint}")
    for name in ("rate_limit", "batch_size", "max_pending_batches",
                 "export_workers", "max_read_bytes", "ingress_capacity"):
        if getattr(config, name) <= 0:
            raise ConfigError(f"{name} must be > 0")
    for name in ("flush_interval", "poll_interval", "backoff_base", "request_timeout"):
        if getattr(config, name) <= 0:
            raise ConfigError(f"{name} must be > 0")
    if config.max_retries < 0:
        raise ConfigError("max_retries must be >= 0")
    if config.backoff_max < config.backoff_base:
        raise ConfigError("backoff_max must be >= backoff_base")
    # Above 1/3 a jittered delay can undercut the previous attempt's.
    if not 0 <= config.backoff_jitter < 1 / 3:
        raise ConfigError("backoff_jitter must be in [0, 1/3)")
    for name in ("shutdown_grace", "ingress_timeout", "metrics_interval"):
        if getattr(config, name) < 0:
            raise ConfigError(f"{name} must be >= 0")
    if config.start_position not in START_POSITIONS:
        raise ConfigError(
            f"start_position must be one of {', '.join(START_POSITIONS)}"
        )

    if config.batch_size > config.rate_limit:
        logger.info("batch_size %d exceeds rate_limit %d, batches capped at %d records",
                    config.batch_size, config.rate_limit, config.effective_batch_size)
    for path in config.log_files:
        if not os.path.exists(path):
            logger.warning("Log file does not exist yet: %s", path)


def prompt_for_config(path: str, input_func=input) -> dict:
    """Ask for the essential settings and save them as YAML at *path*."""
    print(f"No {path} found. Let's create one.")

    def ask(prompt: str, default: str = "") -> str:
        suffix = f" [{default}]" if default else ""
        answer = input_func(f"{prompt}{suffix}: ").strip()
        return answer or default

    log_files = _parse_list(ask("Enter comma-separated log file paths"))
    endpoint = ask("Enter OTLP HTTP endpoint", DEFAULT_ENDPOINT)
    rate_limit = ask("Enter rate limit (logs per second)", "100")
    service_name = ask("Enter service name", DEFAULT_SERVICE_NAME)
    host_name = ask("Enter host name (leave blank to auto-detect)")

    data = {
        "log_files": log_files,
        "endpoint": endpoint,
        "rate_limit": _convert("rate_limit", rate_limit),
        "service_name": service_name,
    }
    if host_name:
        data["host_name"] = host_name

    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    print(f"Saved config to {path}")
    return data
