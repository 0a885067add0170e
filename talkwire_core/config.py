"""Client configuration.

Configuration is plain data: a ``ClientConfig`` built in code or loaded from
a YAML file such as::

    endpoint: legy.line-apps.com
    device: DESKTOPWIN
    timeout: 30
    long_timeout: 180
    polling:
      backoff_base: 1
      backoff_max: 60
      batch_size: 100
    login:
      verify_deadline: 180
      verify_retry_interval: 1
    storage_path: ./storage.json
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigLoadError

DEFAULT_ENDPOINT = "legy.line-apps.com"


@dataclass(frozen=True)
class PollingConfig:
    """Long-poll engine tuning.

    Attributes:
        backoff_base: First reconnect delay (seconds).
        backoff_max: Upper bound for the reconnect delay (seconds).
        batch_size: Operations requested per long-poll call.
    """

    backoff_base: float = 1.0
    backoff_max: float = 60.0
    batch_size: int = 100


@dataclass(frozen=True)
class LoginConfig:
    """Login flow tuning.

    Attributes:
        verify_deadline: Give up polling a verification endpoint after this
            many seconds.
        default_pincode: Pincode offered when the server does not pick one.
        verify_retry_interval: Pause between verification checks that come
            back without a result.
    """

    verify_deadline: float = 180.0
    default_pincode: str = "114514"
    verify_retry_interval: float = 1.0


@dataclass(frozen=True)
class ClientConfig:
    """Top-level client configuration.

    Attributes:
        endpoint: API host.
        device: Device type presented to the server.
        version: App version override; the device default when None.
        timeout: Default RPC timeout (seconds).
        long_timeout: Timeout for long-poll RPCs (seconds).
        storage_path: JSON storage file; in-memory storage when None.
    """

    endpoint: str = DEFAULT_ENDPOINT
    device: str = "DESKTOPWIN"
    version: str | None = None
    timeout: float = 30.0
    long_timeout: float = 180.0
    storage_path: Path | None = None
    polling: PollingConfig = field(default_factory=PollingConfig)
    login: LoginConfig = field(default_factory=LoginConfig)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with error handling."""
    if not path.exists():
        raise ConfigLoadError(f"File not found: {path}")
    with path.open() as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as err:
            raise ConfigLoadError(f"Invalid YAML in {path}: {err}") from err
    if not isinstance(data, dict):
        raise ConfigLoadError(f"Expected a mapping at the top of {path}")
    return data


def _positive(data: dict[str, Any], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigLoadError(f"{key} must be a positive number, got {value!r}")
    return float(value)


def config_from_dict(data: dict[str, Any]) -> ClientConfig:
    """Build a ClientConfig from a parsed mapping.

    Raises:
        ConfigLoadError: If a value has the wrong type or range.
    """
    polling_data = data.get("polling") or {}
    login_data = data.get("login") or {}
    if not isinstance(polling_data, dict) or not isinstance(login_data, dict):
        raise ConfigLoadError("polling and login sections must be mappings")

    backoff_base = _positive(polling_data, "backoff_base", PollingConfig.backoff_base)
    backoff_max = _positive(polling_data, "backoff_max", PollingConfig.backoff_max)
    if backoff_max < backoff_base:
        raise ConfigLoadError("backoff_max must not be smaller than backoff_base")

    batch_size = polling_data.get("batch_size", PollingConfig.batch_size)
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
        raise ConfigLoadError(
            f"batch_size must be a positive integer, got {batch_size!r}"
        )

    storage_path = data.get("storage_path")
    version = data.get("version")

    return ClientConfig(
        endpoint=str(data.get("endpoint", DEFAULT_ENDPOINT)),
        device=str(data.get("device", ClientConfig.device)),
        version=str(version) if version is not None else None,
        timeout=_positive(data, "timeout", ClientConfig.timeout),
        long_timeout=_positive(data, "long_timeout", ClientConfig.long_timeout),
        storage_path=Path(storage_path) if storage_path else None,
        polling=PollingConfig(
            backoff_base=backoff_base,
            backoff_max=backoff_max,
            batch_size=batch_size,
        ),
        login=LoginConfig(
            verify_deadline=_positive(
                login_data, "verify_deadline", LoginConfig.verify_deadline
            ),
            default_pincode=str(
                login_data.get("default_pincode", LoginConfig.default_pincode)
            ),
            verify_retry_interval=_positive(
                login_data,
                "verify_retry_interval",
                LoginConfig.verify_retry_interval,
            ),
        ),
    )


def load_config(path: Path) -> ClientConfig:
    """Load client configuration from a YAML file.

    Raises:
        ConfigLoadError: If the file is missing, not YAML, or invalid.
    """
    return config_from_dict(_load_yaml(path))
