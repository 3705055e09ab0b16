"""
Configuration loader with YAML and environment variable support.

Priority (highest to lowest):
1. Environment variables: CHCLI_TRANSPORT__CONTAINER_ID=ch-cli
2. User config: --config-dir path / ~/.chcli/config.yaml
3. Built-in defaults: chcli_transport/config/defaults/
"""

import os
from pathlib import Path
from typing import Any, Optional

import yaml

from chcli_transport.config.models import CliTransportConfig
from chcli_transport.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".chcli"
PACKAGE_DEFAULTS_DIR = Path(__file__).parent / "defaults"
ENV_PREFIX = "CHCLI_"
ENV_DELIMITER = "__"


def _deep_merge(base: dict, override: dict) -> dict:
    """Return base updated with override, merging nested dicts key by key."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_file(path: Path) -> dict[str, Any]:
    """Read a YAML mapping; a missing, empty or malformed file yields {}."""
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {path}: {e}")
        return {}
    if content is None:
        return {}
    if not isinstance(content, dict):
        logger.warning(f"Ignoring {path}: top level is not a mapping")
        return {}
    return content


def _set_nested(target: dict[str, Any], key_path: list[str], value: Any) -> None:
    for part in key_path[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[key_path[-1]] = value


def _get_env_overrides(environ: Optional[dict[str, str]] = None) -> dict[str, Any]:
    """
    Collect CHCLI_<SECTION>__<KEY> variables as a nested override dict.

    CHCLI_NODE__PORT=9440 -> {"node": {"port": 9440}}
    CHCLI_TRANSPORT__CONTAINER_POLICY=ephemeral -> {"transport": {"container_policy": "ephemeral"}}

    Names with an empty section or key are skipped.
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        key_path = name[len(ENV_PREFIX):].lower().split(ENV_DELIMITER)
        if all(key_path):
            _set_nested(overrides, key_path, _parse_env_value(raw))

    return overrides


# "0" and "1" are left to the int parser so ports and sizes keep their type
_BOOLEAN_WORDS = {"true": True, "yes": True, "false": False, "no": False}


def _parse_env_value(value: str) -> Any:
    """Coerce an environment string to bool, int or float when it reads as one."""
    lowered = value.lower()
    if lowered in _BOOLEAN_WORDS:
        return _BOOLEAN_WORDS[lowered]
    for convert in (int, float):
        try:
            return convert(value)
        except ValueError:
            continue
    return value


def load_config(config_dir: Optional[str | Path] = None) -> CliTransportConfig:
    """
    Load configuration from multiple sources.

    Args:
        config_dir: Directory holding config.yaml; ~/.chcli/ when omitted

    Returns:
        CliTransportConfig: Validated configuration object

    Raises:
        pydantic.ValidationError: If configuration is invalid
    """
    user_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
    layers = (
        _load_yaml_file(PACKAGE_DEFAULTS_DIR / "settings.yaml"),
        _load_yaml_file(user_dir / "config.yaml"),
        _get_env_overrides(),
    )

    config_data: dict[str, Any] = {}
    for layer in layers:
        config_data = _deep_merge(config_data, layer)

    return CliTransportConfig.model_validate(config_data)
