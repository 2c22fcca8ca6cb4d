"""
Configuration: ``arguments-<environment>.yaml`` plus environment overrides.

The file is looked up in ``/app/config/``, then ``config/``, then the working
directory. Any key may be overridden by an environment variable of the same
upper-case name, which wins over the file.
"""

import importlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from paybridge.errors import ConfigError
from paybridge.models.envelope import mask_credential
from paybridge.transport.bus import EventBus, ReplayPreset
from paybridge.transport.http import BackendClient

logger = logging.getLogger(__name__)

CONFIG_DIRS = (Path("/app/config"), Path("config"), Path("."))
MEMORY_BUS = "memory"

# YAML / environment key -> (section, field)
KEYS: dict[str, tuple[str, str]] = {
    "TOPIC": ("bus", "topic"),
    "USER_ID": ("bus", "user_id"),
    "BUS_FACTORY": ("bus", "factory"),
    "REPLAY_PRESET": ("bus", "replay_preset"),
    "REPLAY_ID": ("bus", "replay_id"),
    "FETCH_SIZE": ("bus", "fetch_size"),
    "KEEPALIVE_INTERVAL": ("bus", "keepalive_interval"),
    "RESPONSE_TIMEOUT": ("bus", "response_timeout"),
    "KODY_HOSTNAME": ("backend", "hostname"),
    "KODY_PORT": ("backend", "port"),
    "KODY_USE_TLS": ("backend", "use_tls"),
    "KODY_API_KEY": ("backend", "api_key"),
    "KODY_STORE_ID": ("backend", "store_id"),
    "REQUIRE_API_KEY": ("backend", "require_api_key"),
}


def parse_replay_id(value: Any) -> Optional[bytes]:
    """Replay id from a byte list (``[0, 0, 1, 44]``, also as a string), hex text or bytes."""
    if value is None or value == "":
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            value = json.loads(text)
        else:
            return bytes.fromhex(text.removeprefix("0x"))
    if isinstance(value, (list, tuple)):
        return bytes(int(b) & 0xFF for b in value)
    raise ValueError(f"Unsupported replay id: {value!r}")


class BusConfig(BaseModel):
    topic: str
    user_id: str = ""
    factory: str = MEMORY_BUS
    replay_preset: ReplayPreset = ReplayPreset.LATEST
    replay_id: Optional[bytes] = None
    fetch_size: int = Field(10, gt=0)
    keepalive_interval: float = Field(5.0, gt=0)
    response_timeout: float = Field(30.0, gt=0)

    @field_validator("replay_preset", mode="before")
    @classmethod
    def _upper_preset(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("replay_id", mode="before")
    @classmethod
    def _parse_replay_id(cls, v: Any) -> Optional[bytes]:
        return parse_replay_id(v)


class BackendConfig(BaseModel):
    hostname: Optional[str] = None
    port: int = 443
    use_tls: bool = True
    api_key: Optional[str] = Field(None, repr=False)
    store_id: Optional[str] = None
    require_api_key: bool = True


class BridgeConfig(BaseModel):
    environment: str
    bus: BusConfig
    backend: BackendConfig = Field(default_factory=BackendConfig)

    def backend_client(self, **kwargs: Any) -> BackendClient:
        if not self.backend.hostname:
            raise ConfigError("KODY_HOSTNAME is required to call the payment service")
        return BackendClient(self.backend.hostname, self.backend.port, use_tls=self.backend.use_tls, **kwargs)

    def build_bus(self) -> EventBus:
        return resolve_bus_factory(self.bus.factory)(self)


def _memory_bus(config: BridgeConfig) -> EventBus:
    from paybridge.transport.memory import InMemoryEventBus
    return InMemoryEventBus()


def resolve_bus_factory(name: str) -> Callable[[BridgeConfig], EventBus]:
    """``memory`` or ``package.module:callable``; the callable receives the BridgeConfig."""
    if name == MEMORY_BUS:
        return _memory_bus
    module_name, sep, attr = name.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Invalid BUS_FACTORY {name!r}, expected 'package.module:callable'")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Cannot load BUS_FACTORY {name!r}: {e}") from e
    if not callable(factory):
        raise ConfigError(f"BUS_FACTORY {name!r} is not callable")
    return factory


def find_config_file(environment: str, search_dirs: Sequence[Path] = CONFIG_DIRS) -> Optional[Path]:
    filename = f"arguments-{environment}.yaml"
    for directory in search_dirs:
        path = Path(directory) / filename
        if path.is_file():
            return path
    return None


def load_config(
    environment: str,
    search_dirs: Sequence[Path] = CONFIG_DIRS,
    environ: Optional[Mapping[str, str]] = None,
) -> BridgeConfig:
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    path = find_config_file(environment, search_dirs)
    if path is not None:
        logger.info(f"Loading configuration from {path}")
        try:
            with open(path, "r") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"{path} must contain a mapping of keys")
        values.update({k: v for k, v in loaded.items() if k in KEYS})

    overrides = {k: environ[k] for k in KEYS if environ.get(k) not in (None, "")}
    if path is None and not overrides:
        raise ConfigError(f"No arguments-{environment}.yaml found and no configuration in the environment")
    for key in overrides:
        logger.debug(f"{key} taken from the environment")
    values.update(overrides)

    sections: dict[str, dict[str, Any]] = {"bus": {}, "backend": {}}
    for key, value in values.items():
        section, field = KEYS[key]
        sections[section][field] = value
    if not sections["bus"].get("topic"):
        raise ConfigError("TOPIC is required")

    try:
        config = BridgeConfig(environment=environment, **sections)
    except (ValidationError, ValueError) as e:
        raise ConfigError(f"Invalid configuration for {environment}: {e}") from e
    logger.info(
        f"Configuration {environment}: topic={config.bus.topic} bus={config.bus.factory} "
        f"backend={config.backend.hostname or '<unset>'} key={mask_credential(config.backend.api_key)}"
    )
    return config
