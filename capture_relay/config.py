import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from loguru import logger
from pydantic import ValidationError

from capture_relay.errors import ConfigError
from capture_relay.models import RelayConfig

ENV_PREFIX = "CAPTURE_RELAY_"
_JSON_FIELDS = {"headers", "sensitive_headers"}


def _from_env(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in RelayConfig.model_fields:
        raw = env.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        if name in _JSON_FIELDS:
            try:
                values[name] = json.loads(raw)
            except ValueError as e:
                raise ConfigError(f"{ENV_PREFIX}{name.upper()} is not valid JSON: {e}")
        else:
            values[name] = raw
    return values


def load_config(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> RelayConfig:
    """
    Builds a RelayConfig from, in increasing precedence: defaults, a JSON
    file (camelCase or snake_case keys), CAPTURE_RELAY_* environment
    variables, and keyword overrides.
    """
    values: dict[str, Any] = {}
    if path is not None:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigError(f"Could not read config file {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")
        # normalise camelCase keys so env and overrides can replace them by field name
        for key, value in data.items():
            field = next(
                (name for name, info in RelayConfig.model_fields.items() if key in (name, info.alias)),
                key,
            )
            values[field] = value

    values.update(_from_env(os.environ if env is None else env))
    values.update(overrides)

    try:
        config = RelayConfig.model_validate(values)
    except ValidationError as e:
        problems = ", ".join(f"{'.'.join(map(str, err['loc'])) or 'config'}: {err['msg']}" for err in e.errors())
        raise ConfigError(f"Invalid configuration: {problems}") from e

    logger.debug(
        f"Loaded config endpoint={config.endpoint_url or '<unset>'} "
        f"polling={'on' if config.enable_polling else 'off'} headers={sorted(config.headers)}"
    )
    return config
