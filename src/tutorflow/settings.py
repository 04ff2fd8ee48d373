"""Engine settings.

Settings cover the machinery around a tutorial (storage location, read
retries, polling cadence, error history size) as opposed to
:class:`~tutorflow.models.TutorialConfig`, which travels with templates and
variants. They are loaded from a YAML file such as::

    progress_dir: ~/.tutorflow/progress
    read_retries: 3
    retry_delay_seconds: 0.25
    poll_interval_seconds: 2.0
    error_history_size: 50
    default_template: standard
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class EngineSettings(BaseModel):
    """Process-wide engine settings."""

    progress_dir: Path = Field(
        default_factory=lambda: Path.home() / ".tutorflow" / "progress",
        description="Directory used by the JSON file progress store",
    )
    read_retries: int = Field(default=3, ge=1, description="Attempts per progress read")
    retry_delay_seconds: float = Field(
        default=0.25, ge=0, description="Delay between progress read attempts"
    )
    poll_interval_seconds: float = Field(
        default=2.0, gt=0, description="Interval of the polling detection strategy"
    )
    error_history_size: int = Field(default=50, ge=1)
    default_template: str = Field(default="standard")
    templates_dir: Path | None = Field(
        default=None, description="Directory of custom template and variant YAML files"
    )


def load_settings(path: Path | None = None, overrides: dict[str, Any] | None = None) -> EngineSettings:
    """Load engine settings from YAML.

    Args:
        path: YAML file to read. None uses defaults only.
        overrides: Values applied on top of the file contents.

    Returns:
        Validated EngineSettings.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the file is not a mapping or fails validation.
    """
    data: dict[str, Any] = {}
    if path is not None:
        if not path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
        with open(path) as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Invalid settings YAML: {path}")
        data.update(loaded)
        logger.debug("Loaded engine settings from %s", path)

    if overrides:
        data.update(overrides)

    for key in ("progress_dir", "templates_dir"):
        if isinstance(data.get(key), str):
            data[key] = Path(data[key]).expanduser()

    try:
        return EngineSettings(**data)
    except ValidationError as e:
        raise ValueError(f"Invalid engine settings: {e}") from e
