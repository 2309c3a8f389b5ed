"""Configuration parsing for dnsrelay.

Brief:
  Reads the YAML config file, layers environment and CLI overrides on top,
  validates the merged mapping against the JSON Schema, and turns it into
  typed pydantic settings used by the entrypoint.

Inputs:
  - YAML config paths, environment mappings, CLI override strings

Outputs:
  - Config dicts and RelaySettings instances
"""

from __future__ import annotations

import os
from typing import Any, Dict, Literal, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, Field

from .config_schema import validate_config

ENV_PREFIX = "DNSRELAY_"

# (environment suffix, config section, key)
_ENV_OVERRIDES = (
    ("LISTEN_HOST", "listen", "host"),
    ("LISTEN_PORT", "listen", "port"),
    ("UPSTREAM_HOST", "upstream", "host"),
    ("UPSTREAM_PORT", "upstream", "port"),
)


class ListenConfig(BaseModel):
    """Address the UDP server binds to."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=5353, ge=0, le=65535)

    class Config:
        extra = "ignore"


class UpstreamConfig(BaseModel):
    """The single upstream resolver queries are forwarded to."""

    host: str = Field(default="1.1.1.1")
    port: int = Field(default=53, ge=1, le=65535)
    transport: Literal["udp", "tcp"] = Field(default="udp")
    timeout_ms: int = Field(default=2000, ge=1)

    class Config:
        extra = "ignore"


class CacheConfig(BaseModel):
    """Cache backend selection and tuning."""

    backend: str = Field(default="memory")
    max_cost: int = Field(default=10000, ge=1)
    cost: Literal["entries", "bytes"] = Field(default="entries")
    eviction_policy: Literal["lru", "lfu", "fifo", "random", "almost_expired"] = Field(
        default="lru"
    )
    default_ttl: int = Field(default=60, ge=0)
    default_retention: int = Field(default=300, ge=0)
    cache_empty_answers: bool = Field(default=True)

    class Config:
        extra = "ignore"

    def store_options(self) -> Dict[str, Any]:
        """Brief: Keyword arguments for the cache store constructor.

        Inputs:
          - None.

        Outputs:
          - dict: max_cost, cost, eviction_policy and default_retention.
        """

        return {
            "max_cost": self.max_cost,
            "cost": self.cost,
            "eviction_policy": self.eviction_policy,
            "default_retention": self.default_retention,
        }


class ServerConfig(BaseModel):
    recursion_available: bool = Field(default=True)
    failure_policy: Literal["drop", "servfail"] = Field(default="drop")

    class Config:
        extra = "ignore"


class RelaySettings(BaseModel):
    """Complete, typed runtime configuration.

    Example:
      >>> RelaySettings().listen.port
      5353
    """

    listen: ListenConfig = Field(default_factory=ListenConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "ignore"


def parse_host_port(text: str, *, what: str = "address") -> Tuple[str, Optional[int]]:
    """Brief: Split 'HOST:PORT' (or '[v6]:PORT', or a bare host) into parts.

    Inputs:
      - text: Address string from the command line or environment.
      - what: Label used in error messages.

    Outputs:
      - (host, port): port is None when the string carries no port.

    Raises:
      - ValueError: empty host or a port that is not an integer in 0..65535.

    Example:
      >>> parse_host_port("127.0.0.1:5353")
      ('127.0.0.1', 5353)
      >>> parse_host_port("[::1]:53")
      ('::1', 53)
    """

    raw = str(text or "").strip()
    port_text: Optional[str] = None
    if raw.startswith("["):
        host, sep, rest = raw[1:].partition("]")
        if not sep:
            raise ValueError(f"Invalid {what} {text!r}: missing ']'")
        if rest:
            if not rest.startswith(":"):
                raise ValueError(f"Invalid {what} {text!r}")
            port_text = rest[1:]
    elif raw.count(":") == 1:
        host, _, port_text = raw.partition(":")
    else:
        # Bare hostname, IPv4 address, or unbracketed IPv6 address.
        host = raw

    if not host:
        raise ValueError(f"Invalid {what} {text!r}: empty host")
    if port_text is None:
        return host, None
    return host, _parse_port(port_text, what=what)


def _parse_port(value: Any, *, what: str) -> int:
    try:
        port = int(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid {what} port {value!r}: not an integer") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"Invalid {what} port {port}: must be within 0..65535")
    return port


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    block = cfg.get(name)
    if block is None:
        block = {}
        cfg[name] = block
    if not isinstance(block, dict):
        raise ValueError(f"config.{name} must be a mapping when present")
    return block


def apply_overrides(
    cfg: Dict[str, Any],
    *,
    environ: Optional[Mapping[str, str]] = None,
    listen: Optional[str] = None,
    upstream: Optional[str] = None,
    log_level: Optional[str] = None,
) -> Dict[str, Any]:
    """Brief: Layer environment and CLI overrides onto a config mapping.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - environ: Environment mapping (defaults to os.environ).
      - listen: CLI '--listen HOST:PORT' value.
      - upstream: CLI '--upstream HOST:PORT' value.
      - log_level: CLI '--log-level' value.

    Outputs:
      - dict: cfg, for chaining.

    Precedence:
      - CLI overrides environment overrides the config file.

    Example:
      >>> apply_overrides({}, environ={"DNSRELAY_LISTEN_PORT": "5300"})["listen"]
      {'port': 5300}
    """

    env = os.environ if environ is None else environ
    for suffix, section, key in _ENV_OVERRIDES:
        value = env.get(ENV_PREFIX + suffix)
        if value is None or not str(value).strip():
            continue
        if key == "port":
            _section(cfg, section)[key] = _parse_port(value, what=f"{section} {key}")
        else:
            _section(cfg, section)[key] = str(value).strip()

    for section, value in (("listen", listen), ("upstream", upstream)):
        if not value:
            continue
        host, port = parse_host_port(value, what=f"--{section}")
        block = _section(cfg, section)
        block["host"] = host
        if port is not None:
            block["port"] = port

    if log_level:
        _section(cfg, "logging")["level"] = str(log_level).strip().lower()

    return cfg


def load_config(config_path: Optional[str]) -> Dict[str, Any]:
    """Brief: Read a YAML config file into a mapping.

    Inputs:
      - config_path: Path to the YAML file, or None for an empty config.

    Outputs:
      - dict: Parsed mapping ({} for an empty file).

    Raises:
      - ValueError: unreadable file, YAML syntax error, or non-mapping root.
    """

    if config_path is None:
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ValueError(f"Cannot read config file {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"Cannot parse config file {config_path}: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")
    return cfg


def parse_config_file(
    config_path: Optional[str],
    *,
    environ: Optional[Mapping[str, str]] = None,
    listen: Optional[str] = None,
    upstream: Optional[str] = None,
    log_level: Optional[str] = None,
    unknown_keys: str = "warn",
) -> Dict[str, Any]:
    """Brief: Read, override, and schema-validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file (None: defaults only).
      - environ, listen, upstream, log_level: Overrides, see apply_overrides.
      - unknown_keys: Policy passed to validate_config.

    Outputs:
      - dict: Validated configuration mapping.

    Raises:
      - ValueError: When reading, overriding or validation fails.
    """

    cfg = load_config(config_path)
    apply_overrides(
        cfg, environ=environ, listen=listen, upstream=upstream, log_level=log_level
    )
    validate_config(
        cfg, config_path=config_path or "<defaults>", unknown_keys=unknown_keys
    )
    return cfg


def build_settings(cfg: Mapping[str, Any]) -> RelaySettings:
    """Brief: Convert a validated config mapping into RelaySettings.

    Inputs:
      - cfg: Configuration mapping.

    Outputs:
      - RelaySettings with defaults filled in.

    Raises:
      - ValueError: when the mapping does not fit the settings model.

    Example:
      >>> build_settings({"upstream": {"host": "9.9.9.9"}}).upstream.port
      53
    """

    data = {k: v for k, v in dict(cfg).items() if v is not None}
    try:
        return RelaySettings(**data)
    except Exception as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc
