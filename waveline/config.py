import os
from pathlib import Path
from typing import Any, Dict, Optional

import toml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from waveline.utils.logging import get_logger

logger = get_logger()

ENV_PREFIX = "WAVELINE_"


class WavelineSettings(BaseModel):
    """Orchestrator tuning knobs."""

    model_config = ConfigDict(extra="ignore")

    max_concurrent_steps: int = Field(4, ge=1)
    max_concurrent_runs: int = Field(2, ge=1)
    default_step_timeout: Optional[float] = Field(None, gt=0)
    store_retry_attempts: int = Field(3, ge=1)
    store_retry_delay: float = Field(0.05, ge=0)
    max_subworkflow_depth: int = Field(5, ge=1)
    max_loop_iterations: int = Field(1000, ge=1)


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name in WavelineSettings.model_fields:
        value = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value is not None and value != "":
            overrides[name] = value
    return overrides


def read_pyproject(path: Path) -> Dict[str, Any]:
    """Return the ``[tool.waveline]`` table of *path*, or an empty dict."""
    if not path.is_file():
        logger.debug(f"pyproject.toml not found at {path}")
        return {}

    try:
        pyproject_data = toml.load(path)
    except PermissionError:
        logger.warning(f"permission denied when trying to read {path}")
        return {}
    except toml.TomlDecodeError as e:
        logger.warning(f"invalid TOML in {path}: {e}")
        return {}

    section = pyproject_data.get("tool", {}).get("waveline")
    if section is None:
        logger.debug("[tool.waveline] configuration not found in pyproject.toml")
        return {}
    return dict(section)


def get_waveline_config(path: Optional[Path] = None) -> WavelineSettings:
    """
    Build :class:`WavelineSettings` from ``pyproject.toml`` and the environment.

    Values come from the ``[tool.waveline]`` table of ``path`` (default:
    ``pyproject.toml`` in the working directory) and are overridden by
    ``WAVELINE_<FIELD>`` environment variables.  Invalid configuration falls
    back to the defaults.
    """
    pyproject_path = path or Path.cwd() / "pyproject.toml"
    data = {**read_pyproject(pyproject_path), **_env_overrides()}
    try:
        return WavelineSettings.model_validate(data)
    except ValidationError as e:
        logger.warning(f"invalid waveline configuration, using defaults: {e}")
        return WavelineSettings()
