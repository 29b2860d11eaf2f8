"""
graphcas configuration.

Configuration sources (in order of precedence):
    1. Environment variables (GRAPHCAS_*)
    2. Values set at runtime or loaded from a YAML file
    3. Default values

``load_config`` always returns a fresh :class:`GraphCasConfig`; there is no
process-wide configuration object. Transports and pipelines receive the
values they need explicitly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml
from jsonschema import Draft202012Validator

from graphcas.errors import ConfigError
from graphcas.observability import Component, get_logger

T = TypeVar("T")

ENV_CONFIG_PATH = "GRAPHCAS_CONFIG"

logger = get_logger("loader", Component.CONFIG)


class ValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value!r}")
        self._value = value

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)
        try:
            if target_type == bool:
                return value.lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == float:
                return float(value)  # type: ignore
            return value  # type: ignore
        except ValueError as exc:
            raise ValidationError(f"{self.env_var}={value!r} is not a valid {target_type.__name__}") from exc


@dataclass
class SendConfig:
    """Configuration for the Send pipeline."""
    pool_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=8,
        env_var="GRAPHCAS_SEND_POOL_SIZE",
        description="Concurrent writes per transport",
        validator=lambda x: x > 0,
    ))


@dataclass
class ReceiveConfig:
    """Configuration for the Receive pipeline."""
    verify_hashes: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="GRAPHCAS_RECEIVE_VERIFY",
        description="Recompute and check the hash of every fetched payload",
    ))
    prefetch_batch_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=500,
        env_var="GRAPHCAS_RECEIVE_PREFETCH_BATCH",
        description="Ids per batched fetch when prefetching a closure",
        validator=lambda x: x > 0,
    ))


@dataclass
class RemoteConfig:
    """Configuration for the remote transport."""
    max_batch_objects: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1000,
        env_var="GRAPHCAS_REMOTE_MAX_BATCH_OBJECTS",
        description="Objects per upload batch",
        validator=lambda x: x > 0,
    ))
    max_batch_bytes: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1024 * 1024,  # 1MB
        env_var="GRAPHCAS_REMOTE_MAX_BATCH_BYTES",
        description="Payload bytes per upload batch",
        validator=lambda x: x > 0,
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="GRAPHCAS_REMOTE_TIMEOUT",
        description="HTTP request timeout in seconds",
        validator=lambda x: x > 0,
    ))
    max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="GRAPHCAS_REMOTE_MAX_ATTEMPTS",
        description="Attempts per request for transient failures",
        validator=lambda x: x >= 1,
    ))
    base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.5,
        env_var="GRAPHCAS_REMOTE_BACKOFF",
        description="Base delay for exponential backoff",
        validator=lambda x: x >= 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for logging."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="GRAPHCAS_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="GRAPHCAS_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class GraphCasConfig:
    """Root configuration."""
    send: SendConfig = field(default_factory=SendConfig)
    receive: ReceiveConfig = field(default_factory=ReceiveConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by dotted path.

        Example: config.get("remote.max_batch_objects")
        """
        obj: Any = self
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        if isinstance(obj, ConfigValue):
            return obj.get()
        raise ConfigError(f"Invalid config path: {path}")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by dotted path.

        Example: config.set("send.pool_size", 4)
        """
        parts = path.split(".")
        obj: Any = self
        for part in parts[:-1]:
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)

        attr = getattr(obj, parts[-1], None)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def apply(self, data: Dict[str, Any]) -> None:
        """Apply a nested dict of values."""
        def apply_to(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                attr = getattr(config_obj, key, None)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to(attr, value, f"{prefix}{key}.")
                else:
                    raise ConfigError(f"Unknown config key: {prefix}{key}")

        apply_to(self, data, "")

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value!r}")
                except ConfigError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """JSON Schema describing the YAML config file layout."""
        py_to_json = {bool: "boolean", int: "integer", float: "number", str: "string"}

        def section_schema(obj: Any) -> Dict[str, Any]:
            if isinstance(obj, ConfigValue):
                kind = py_to_json[type(obj.default)]
                if kind == "number":
                    kind = ["number", "integer"]
                return {"type": kind, "description": obj.description}
            props = {name: section_schema(getattr(obj, name)) for name in obj.__dataclass_fields__}
            return {"type": "object", "properties": props, "additionalProperties": False}

        schema = section_schema(self)
        schema["$schema"] = "https://json-schema.org/draft/2020-12/schema"
        return schema


def load_config(path: Union[str, Path, None] = None) -> GraphCasConfig:
    """
    Build a configuration, optionally loading a YAML file.

    When ``path`` is omitted, ``$GRAPHCAS_CONFIG`` is used if set. The file is
    checked against :meth:`GraphCasConfig.export_schema` before being applied.
    """
    config = GraphCasConfig()
    if path is None:
        env_path = (os.environ.get(ENV_CONFIG_PATH) or "").strip()
        if not env_path:
            return config
        path = env_path

    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file {path} is not valid YAML: {exc}") from exc

    if data is None:
        return config
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {path} must contain a mapping")

    validator = Draft202012Validator(config.export_schema())
    problems = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    if problems:
        details = "; ".join(
            f"{'.'.join(str(p) for p in e.path) or '<root>'}: {e.message}" for e in problems
        )
        raise ValidationError(f"Invalid configuration in {path}: {details}")

    config.apply(data)
    logger.debug("Loaded configuration", path=str(path), sections=sorted(data))
    return config
