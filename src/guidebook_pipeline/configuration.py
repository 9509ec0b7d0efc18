from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import BackoffPolicy

load_dotenv()

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "pipeline.yaml"
CONFIG_ENV_VAR = "GUIDEBOOK_CONFIG"


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def get_default_config_container(resolve: bool = False) -> Dict[str, Any]:
    config = _load_default_config()
    return OmegaConf.to_container(config, resolve=resolve, enum_to_str=True)  # type: ignore[return-value]


def _load_env_config() -> Optional[DictConfig]:
    override_path = os.environ.get(CONFIG_ENV_VAR)
    if not override_path:
        return None
    path = Path(override_path)
    if not path.exists():
        raise FileNotFoundError(f"{CONFIG_ENV_VAR} points to a missing file: {path}")
    return OmegaConf.load(path)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the runtime configuration.

    Layers, lowest precedence first: packaged defaults, the YAML file named by
    ``GUIDEBOOK_CONFIG`` (if set), then ``overrides``. The defaults are in
    struct mode, so an override naming an unknown key raises instead of
    silently adding a setting nobody reads. Queue backoff policies are
    validated here so a misspelt policy type fails at startup.

    Args:
        overrides: Nested mapping of values to apply on top of the defaults

    Returns:
        Merged, read-only-shaped DictConfig
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    layers = [base]
    env_config = _load_env_config()
    if env_config is not None:
        layers.append(env_config)
    if overrides:
        layers.append(OmegaConf.create(overrides))

    merged = DictConfig(OmegaConf.merge(*layers))
    for settings in merged.queues.values():
        BackoffPolicy.model_validate(OmegaConf.to_container(settings.backoff, resolve=True))
    return merged


def queue_settings(config: DictConfig, queue_name: str) -> DictConfig:
    if queue_name not in config.queues:
        raise ValueError(f"Unknown queue: {queue_name}")
    return config.queues[queue_name]


def configure_logging(config: DictConfig) -> None:
    level = str(config.logging.level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=config.logging.format)
