"""JSON Schema-based validation for dnsrelay YAML configuration.

This module validates the parsed ``config.yaml`` mapping against the JSON
Schema document stored under ``assets/config-schema.json``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator, ValidationError
from jsonschema.exceptions import SchemaError

logger = logging.getLogger(__name__)

UNKNOWN_KEY_POLICIES = ("ignore", "warn", "error")


def _normalize_for_validation(cfg: Dict[str, Any]) -> None:
    """Brief: Normalize config values so schema enums stay case-insensitive.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.

    Notes:
      - ``cache: null`` or an empty ``cache.backend`` means the default
        backend, so the key is dropped rather than failing the type check.
    """

    for section, key in (
        ("upstream", "transport"),
        ("cache", "backend"),
        ("cache", "cost"),
        ("cache", "eviction_policy"),
        ("server", "failure_policy"),
        ("logging", "level"),
    ):
        block = cfg.get(section)
        if not isinstance(block, dict):
            continue
        value = block.get(key)
        if isinstance(value, str):
            value = value.strip().lower()
            if value:
                block[key] = value
            else:
                block.pop(key)
        elif key in block and value is None:
            block.pop(key)

    for section in ("listen", "upstream", "cache", "server", "logging"):
        if section in cfg and cfg[section] is None:
            cfg.pop(section)


def get_default_schema_path() -> Path:
    """Brief: Resolve the default JSON Schema path for configuration.

    Inputs:
      - None.

    Outputs:
      - Path to ``assets/config-schema.json`` (may not exist).
    """

    here = Path(__file__).resolve()

    # Source checkout: assets/ lives at the project root.
    for ancestor in here.parents:
        candidate = ancestor / "assets" / "config-schema.json"
        if candidate.is_file():
            return candidate

    project_root = here.parents[3]
    return project_root / "assets" / "config-schema.json"


def _load_schema(schema_path: Optional[Path] = None) -> Dict[str, Any]:
    path = schema_path or get_default_schema_path()
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    """Brief: Format jsonschema validation errors into a human-readable string.

    Inputs:
      - errors: List of jsonschema.ValidationError instances.
      - config_path: Optional path to the YAML config being validated.

    Outputs:
      - String suitable for display in logs or CLI output.
    """

    lines: List[str] = [f"Invalid configuration in {config_path or '<config dict>'}:"]
    for err in errors:
        instance_path = "/".join(str(p) for p in err.path) or "<root>"
        schema_path = "/".join(str(p) for p in err.schema_path)
        lines.append(f"- {instance_path}: {err.message} (schema: {schema_path})")
    return "\n".join(lines)


def _split_extra_property_errors(
    errors: List[ValidationError],
) -> tuple[List[ValidationError], List[ValidationError]]:
    """Brief: Partition validation errors into extra-property vs other errors.

    Inputs:
      - errors: List of jsonschema.ValidationError instances.

    Outputs:
      - (extra_errors, other_errors)
    """

    extra: List[ValidationError] = []
    other: List[ValidationError] = []
    for err in errors:
        if getattr(err, "validator", None) in {
            "additionalProperties",
            "unevaluatedProperties",
        }:
            extra.append(err)
        else:
            other.append(err)
    return extra, other


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = "config.yaml",
    unknown_keys: str = "warn",
) -> None:
    """Brief: Validate a parsed YAML configuration mapping against JSON Schema.

    Inputs:
      - cfg: Dict loaded from YAML (top-level configuration mapping). String
        enum values are lowercased in place.
      - schema_path: Optional explicit path to the JSON Schema file.
      - config_path: Optional YAML path, used only for error messages.
      - unknown_keys: "ignore", "warn" (default) or "error" for keys the
        schema does not describe.

    Outputs:
      - None on success.

    Raises:
      - ValueError: when validation fails, listing every error at once.

    Example:
      >>> import yaml
      >>> data = yaml.safe_load("listen: {host: 127.0.0.1, port: 5353}")
      >>> validate_config(data)  # does not raise for valid config
    """
    if unknown_keys not in UNKNOWN_KEY_POLICIES:
        raise ValueError(
            f"unknown_keys policy must be 'ignore', 'warn', or 'error', got {unknown_keys!r}"
        )
    if not isinstance(cfg, dict):
        raise ValueError(
            f"Invalid configuration in {config_path or '<config dict>'}: "
            "top-level value must be a mapping"
        )

    _normalize_for_validation(cfg)

    effective_schema_path = schema_path or get_default_schema_path()
    if not effective_schema_path.is_file():
        logger.warning(
            "Configuration schema file %s not found; skipping JSON Schema validation",
            effective_schema_path,
        )
        return None

    try:
        schema = _load_schema(effective_schema_path)
        Draft202012Validator.check_schema(schema)
    except (OSError, json.JSONDecodeError, SchemaError) as exc:
        logger.warning(
            "Failed to load or parse configuration schema at %s: %s; "
            "skipping JSON Schema validation",
            effective_schema_path,
            exc,
        )
        return None

    validator = Draft202012Validator(schema)
    all_errors = sorted(validator.iter_errors(cfg), key=lambda e: list(e.path))
    if not all_errors:
        return None

    extra_errors, other_errors = _split_extra_property_errors(all_errors)

    # Non-extra failures are always fatal; list extras too so one pass fixes all.
    if other_errors:
        raise ValueError(
            _format_errors(other_errors + extra_errors, config_path=config_path)
        )

    message = _format_errors(extra_errors, config_path=config_path)
    if unknown_keys == "ignore":
        return None
    if unknown_keys == "warn":
        logger.warning(message)
        return None
    raise ValueError(message)
