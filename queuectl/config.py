from dataclasses import dataclass
from typing import Mapping, Union

from .errors import JobValidationError

DEFAULT_CONFIG = {
    "max_retries": "3",
    "backoff_base": "2",
    "default_timeout_seconds": "0",  # 0 = no timeout
    "dashboard_port": "8080",
    "log_directory": "job_logs",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

_INT_KEYS = {"max_retries", "default_timeout_seconds", "dashboard_port"}


def validate_config_value(key: str, value: str) -> Union[int, float, str]:
    """Check a raw config value and return it coerced to its type."""
    if key not in ALLOWED_CONFIG_KEYS:
        raise JobValidationError(
            f"Unknown config key {key!r}. Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}"
        )
    raw = str(value).strip()
    if key in _INT_KEYS:
        try:
            number = int(raw)
        except ValueError:
            raise JobValidationError(f"{key} must be an integer, got {raw!r}") from None
        if number < 0:
            raise JobValidationError(f"{key} must be >= 0")
        if key == "dashboard_port" and not 1 <= number <= 65535:
            raise JobValidationError("dashboard_port must be between 1 and 65535")
        return number
    if key == "backoff_base":
        try:
            base = float(raw)
        except ValueError:
            raise JobValidationError(f"backoff_base must be a number, got {raw!r}") from None
        if base <= 0:
            raise JobValidationError("backoff_base must be > 0")
        return int(base) if base.is_integer() else base
    if not raw:
        raise JobValidationError(f"{key} cannot be empty")
    return raw


@dataclass(frozen=True)
class QueueConfig:
    max_retries: int = 3
    backoff_base: float = 2
    default_timeout_seconds: int = 0
    dashboard_port: int = 8080
    log_directory: str = "job_logs"

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "QueueConfig":
        """Resolve stored key/value strings over the defaults."""
        merged = {**DEFAULT_CONFIG, **{k: v for k, v in values.items() if k in ALLOWED_CONFIG_KEYS}}
        return cls(**{k: validate_config_value(k, v) for k, v in merged.items()})
