"""Stack configuration: defaults, JSON loading and validation."""
from __future__ import annotations

import dataclasses
import json
import logging
import math
import os
import typing as t

from .flow_socket import SOCKET_CHECK_INTERVAL, SOCKET_IDLE_TIMEOUT
from .memory import MEMORY_CEILING
from .policy import IDLE_THRESHOLD, LOW_WATER_MARK

log = logging.getLogger("udpstack.config")

CONFIG_FILENAME = "udpstack.json"


class ConfigError(ValueError):
    pass


@dataclasses.dataclass
class StackConfig:
    low_water_mark: int = LOW_WATER_MARK
    idle_threshold: float = IDLE_THRESHOLD
    memory_ceiling: int = MEMORY_CEILING
    socket_idle_timeout: float = SOCKET_IDLE_TIMEOUT
    socket_check_interval: float = SOCKET_CHECK_INTERVAL
    # seconds between recycle() ticks driven by the caller
    recycle_interval: float = 1.0

    @classmethod
    def from_dict(cls, data: t.Dict[str, t.Any]) -> "StackConfig":
        if not isinstance(data, dict):
            raise ConfigError(f"config must be a JSON object, got {type(data).__name__}")
        known = {f.name: f for f in dataclasses.fields(cls)}
        kwargs = {}
        for key, value in data.items():
            field = known.get(key)
            if field is None:
                log.warning("ignoring unknown config key %r", key)
                continue
            caster = int if field.type in ("int", int) else float
            try:
                kwargs[key] = caster(value)
            except (TypeError, ValueError, OverflowError) as e:
                raise ConfigError(f"{key}: expected a number, got {value!r}") from e
        config = cls(**kwargs)
        config.validate()
        return config

    def validate(self):
        for field in dataclasses.fields(self):
            if not math.isfinite(getattr(self, field.name)):
                raise ConfigError(f"{field.name} must be a finite number")
        if self.low_water_mark < 0:
            raise ConfigError("low_water_mark must be >= 0")
        if self.idle_threshold < 0:
            raise ConfigError("idle_threshold must be >= 0")
        if self.memory_ceiling <= 0:
            raise ConfigError("memory_ceiling must be > 0")
        for name in ("socket_idle_timeout", "socket_check_interval", "recycle_interval"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0")
        if self.socket_idle_timeout < self.idle_threshold:
            log.warning("socket_idle_timeout %.1fs is shorter than idle_threshold %.1fs",
                        self.socket_idle_timeout, self.idle_threshold)


def find_config() -> t.Optional[str]:
    if os.path.exists(CONFIG_FILENAME):
        return CONFIG_FILENAME
    return None


def load_config(path: t.Optional[str] = None) -> StackConfig:
    """Load a StackConfig from a JSON file, falling back to defaults.

    With no `path`, `udpstack.json` in the working directory is used if present.
    """
    if path is None:
        path = find_config()
    if path is None:
        return StackConfig()
    log.info("loading config from %s", path)
    try:
        with open(path, "rb") as fh:
            data = json.loads(fh.read().decode("utf-8"))
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    except ValueError as e:
        raise ConfigError(f"found an error in {path}: {e}") from e
    return StackConfig.from_dict(data)
