from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

# Environment overrides are interpolated from config.yaml, so .env must load first
load_dotenv()

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]


def _resolve_config_path() -> Path:
    override = os.environ.get("VARIANT_BRIDGE_CONFIG")
    if override:
        return Path(override)
    path = next((candidate for candidate in _CANDIDATE_CONFIG_PATHS if candidate.exists()), None)
    if path is None:  # pragma: no cover - fail fast in broken installs
        raise FileNotFoundError("Default config.yaml could not be located next to the variant_bridge package.")
    return path


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    config_path = _resolve_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found at {config_path}")
    return OmegaConf.load(config_path)


def make_settings(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build resolved settings from the default config plus optional overrides.

    Environment interpolations are resolved here, so the returned object is a
    snapshot of the environment at call time.

    Args:
        overrides: Nested mapping merged over the defaults. Unknown keys are
            rejected because the base config is in struct mode.

    Returns:
        Resolved, read-only DictConfig
    """
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=True))
    OmegaConf.set_struct(base, True)

    merged = OmegaConf.merge(base, OmegaConf.create(overrides or {}))
    OmegaConf.set_readonly(merged, True)
    return merged
