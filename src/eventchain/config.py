"""
Engine options loading.

Options are layered, later layers winning:
  1. EngineOptions defaults
  2. A YAML file, given explicitly or through ``EVENTCHAIN_CONFIG``
  3. ``EVENTCHAIN_*`` environment variables, e.g. ``EVENTCHAIN_MAX_RETRIES=5``
  4. Keyword overrides passed to ``load_options``

Usage:
    from eventchain.config import load_options

    options = load_options(poll_interval=0.5)
"""

import dataclasses
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import msgspec

from eventchain.domain.value_object import EngineOptions

logger = logging.getLogger("eventchain.config")

ENV_PREFIX = "EVENTCHAIN_"
CONFIG_FILE_VAR = "EVENTCHAIN_CONFIG"

_FIELDS = {f.name for f in dataclasses.fields(EngineOptions)}


def _from_file(path: str | Path) -> dict[str, Any]:
    data = msgspec.yaml.decode(Path(path).read_bytes())
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    unknown = set(data) - _FIELDS
    if unknown:
        raise ValueError(f"Unknown option(s) in {path}: {', '.join(sorted(unknown))}")
    logger.debug("Loaded %d option(s) from %s", len(data), path)
    return data


def _from_env(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in _FIELDS:
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is None:
            continue
        if name == "action_timeout" and raw.strip().lower() in ("", "none", "null"):
            values[name] = None
        else:
            values[name] = raw.strip()
    return values


def load_options(
    env: Mapping[str, str] | None = None,
    config_file: str | Path | None = None,
    **overrides: Any,
) -> EngineOptions:
    """
    Builds EngineOptions from a config file, the environment and explicit overrides.

    :param env: Environment to read; defaults to ``os.environ``
    :type env: Mapping[str, str] | None
    :param config_file: YAML file with option values; defaults to ``$EVENTCHAIN_CONFIG``
    :type config_file: str | Path | None
    :param overrides: Option values that win over every other source
    :returns: The merged options
    :rtype: EngineOptions
    :raises ValueError: If an option is unknown or a value has the wrong type
    """
    env = os.environ if env is None else env
    unknown = set(overrides) - _FIELDS
    if unknown:
        raise ValueError(f"Unknown option(s): {', '.join(sorted(unknown))}")

    merged: dict[str, Any] = {}
    config_file = config_file or env.get(CONFIG_FILE_VAR)
    if config_file:
        merged.update(_from_file(config_file))
    merged.update(_from_env(env))
    merged.update(overrides)

    try:
        options = msgspec.convert(merged, type=EngineOptions, strict=False)
    except msgspec.ValidationError as e:
        raise ValueError(f"Invalid engine option: {e}") from None
    if options.max_retries < 0:
        raise ValueError("max_retries must not be negative")
    if options.poll_batch_size < 1:
        raise ValueError("poll_batch_size must be at least 1")
    return options
