from pathlib import Path
from typing import Optional, Type, TypeVar

import yaml
from pydantic import BaseModel
from structlog import get_logger

from dispatchloop.config.schema import PipelineConfig
from dispatchloop.paths import DEFAULT_CONFIG_PATH
from dispatchloop.utils import expand_env_vars

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


def _warn_unknown_keys(model: BaseModel, path: str, config_path: Path) -> None:
    """Recursively warn about unknown keys in a model and its nested models."""
    if model.model_extra:
        logger.warning("Unknown keys in %s at %s: %s", path, config_path, list(model.model_extra.keys()))

    for field_name, field_value in model.__dict__.items():
        if isinstance(field_value, BaseModel):
            _warn_unknown_keys(field_value, f"{path}.{field_name}", config_path)
        elif isinstance(field_value, list):
            for index, item in enumerate(field_value):
                if isinstance(item, BaseModel):
                    _warn_unknown_keys(item, f"{path}.{field_name}[{index}]", config_path)


def load_config(path: Path, model_class: Type[T]) -> T:
    """Load and validate configuration from a YAML file.

    Args:
        path: Path to the YAML file.
        model_class: The Pydantic model class to use for validation.

    Returns:
        The validated configuration model. A missing or unreadable file
        yields the model defaults.

    Raises:
        pydantic.ValidationError: the file parsed but violates the schema.
    """
    if not path.exists():
        return model_class()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to read config file %s: %s", path, e)
        return model_class()

    expanded = expand_env_vars(raw)
    model = model_class.model_validate(expanded)
    _warn_unknown_keys(model, "root", path)
    return model


def load_pipeline_config_file(path: Optional[Path] = None) -> PipelineConfig:
    """Load the pipeline configuration file (default ``~/.dispatchloop/config.yml``)."""
    return load_config(path or DEFAULT_CONFIG_PATH, PipelineConfig)
