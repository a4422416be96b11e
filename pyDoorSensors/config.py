"""YAML-based configuration for the door sensor monitor.

The configuration names the fixed set of devices to watch, the Particle
access token and the API base URL, plus a few timing knobs.  It is
usually split in two files: a checked-in defaults file and an optional
local override holding the credentials.  Later files are deep-merged
over earlier ones; missing files are skipped::

    # defaults.yaml
    particle:
      base_url: https://api.particle.io
    devices:
      - id: 1e0031000447343138333038
        name: Toilet 1
      - id: 2a003b000447343233323032
        name: Toilet 2
    timing:
      reconnect_delay: 3.0

    # local.yaml
    particle:
      access_token: 0123456789abcdef

``devices`` may also be given as a mapping ``{id: name}``.  The
environment variable :data:`ACCESS_TOKEN_ENV` overrides the token.

Usage example::

    from pyDoorSensors.config import load_config

    config = load_config("config/defaults.yaml", "config/local.yaml")
    config.validate()
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

logger = logging.getLogger(__name__)

#: Default Particle cloud API root.
DEFAULT_BASE_URL: str = "https://api.particle.io"

#: Environment variable overriding ``particle.access_token``.
ACCESS_TOKEN_ENV: str = "DOOR_SENSORS_ACCESS_TOKEN"


class ConfigurationError(ValueError):
    """The configuration is incomplete or invalid."""


@dataclass
class DoorSensorConfig:
    """Everything the connectivity manager needs before it can activate.

    Attributes
    ----------
    devices:
        Ordered mapping of device identifier → display name.
    access_token:
        Particle access token.
    base_url:
        API root URL.
    reconnect_delay:
        Seconds between a terminal stream failure and the next attempt.
    retry_delay:
        Seconds the transport waits before re-opening a dropped stream.
    request_timeout:
        Total timeout of a state fetch, in seconds.
    connect_timeout:
        Timeout for opening an event stream, in seconds.
    """

    devices: Dict[str, str] = field(default_factory=dict)
    access_token: str = ""
    base_url: str = DEFAULT_BASE_URL
    reconnect_delay: float = 3.0
    retry_delay: float = 1.0
    request_timeout: float = 10.0
    connect_timeout: float = 10.0

    # ---- construction ------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DoorSensorConfig:
        """Build a config from the nested YAML layout.

        Raises
        ------
        ConfigurationError
            If a section has the wrong shape.
        """
        particle = data.get("particle") or {}
        timing = data.get("timing") or {}
        if not isinstance(particle, Mapping):
            raise ConfigurationError("'particle' must be a mapping")
        if not isinstance(timing, Mapping):
            raise ConfigurationError("'timing' must be a mapping")

        devices = _parse_devices(data.get("devices"))
        defaults = cls()
        try:
            return cls(
                devices=devices,
                access_token=str(particle.get("access_token") or ""),
                base_url=str(particle.get("base_url") or DEFAULT_BASE_URL),
                reconnect_delay=float(
                    timing.get("reconnect_delay", defaults.reconnect_delay)
                ),
                retry_delay=float(
                    timing.get("retry_delay", defaults.retry_delay)
                ),
                request_timeout=float(
                    timing.get("request_timeout", defaults.request_timeout)
                ),
                connect_timeout=float(
                    timing.get("connect_timeout", defaults.connect_timeout)
                ),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid timing value: {exc}") from exc

    # ---- validation --------------------------------------------------

    def validate(self) -> None:
        """Check that the configuration is complete.

        Raises
        ------
        ConfigurationError
            On a missing token, base URL or device set, an empty device
            identifier, or a non-positive delay / timeout.
        """
        if not self.access_token:
            raise ConfigurationError("Missing Particle access token")
        if not self.base_url:
            raise ConfigurationError("Missing API base URL")
        if not self.devices:
            raise ConfigurationError("No devices configured")
        for device_id in self.devices:
            if not device_id or not str(device_id).strip():
                raise ConfigurationError("Empty device identifier")
        for name in (
            "reconnect_delay", "retry_delay",
            "request_timeout", "connect_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"'{name}' must be positive")

    @property
    def is_complete(self) -> bool:
        try:
            self.validate()
        except ConfigurationError:
            return False
        return True

    def __repr__(self) -> str:
        # Never show the token.
        return (
            f"DoorSensorConfig(devices={list(self.devices)!r}, "
            f"base_url={self.base_url!r}, "
            f"access_token={'***' if self.access_token else ''!r})"
        )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_config(*paths: Union[str, Path]) -> DoorSensorConfig:
    """Load and merge YAML files into a :class:`DoorSensorConfig`.

    Files are merged in order, later ones winning.  Missing files are
    skipped.  The result is *not* validated; call
    :meth:`DoorSensorConfig.validate`.

    Raises
    ------
    ConfigurationError
        If an existing file cannot be read or parsed.
    """
    merged: Dict[str, Any] = {}
    for path in paths:
        data = _load_yaml(Path(path))
        if data is not None:
            merged = _deep_merge(merged, data)

    config = DoorSensorConfig.from_dict(merged)

    token = os.environ.get(ACCESS_TOKEN_ENV)
    if token:
        logger.debug("Access token taken from $%s", ACCESS_TOKEN_ENV)
        config.access_token = token

    logger.info(
        "Loaded configuration with %d device(s)", len(config.devices)
    )
    return config


def _load_yaml(path: Path) -> Optional[Dict[str, Any]]:
    """Return the mapping in *path*, or ``None`` if the file is missing."""
    if not path.is_file():
        logger.debug("Config file %s not found — skipping", path)
        return None
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Failed to load {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Expected a mapping at top level in {path}, "
            f"got {type(data).__name__}"
        )
    logger.debug("Loaded config file %s", path)
    return data


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge *override* into a copy of *base*.

    Mappings are merged key by key; anything else (including lists) is
    replaced.
    """
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _parse_devices(raw: Any) -> Dict[str, str]:
    """Normalise the ``devices`` section to an ordered ``{id: name}``."""
    if raw is None:
        return {}

    devices: Dict[str, str] = {}
    if isinstance(raw, Mapping):
        for device_id, name in raw.items():
            devices[str(device_id)] = str(name if name is not None else device_id)
        return devices

    if isinstance(raw, list):
        for entry in raw:
            if not isinstance(entry, Mapping) or not entry.get("id"):
                raise ConfigurationError(
                    f"Device entry needs an 'id': {entry!r}"
                )
            device_id = str(entry["id"])
            if device_id in devices:
                raise ConfigurationError(f"Duplicate device id {device_id}")
            devices[device_id] = str(entry.get("name") or device_id)
        return devices

    raise ConfigurationError("'devices' must be a list or a mapping")
