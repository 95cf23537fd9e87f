"""Utility functions and helpers."""

from chatflow.utils.variables import VariableResolver
from chatflow.utils.config import EngineSettings, load_env, get_config
from chatflow.utils.errors import (
    ChatflowError,
    GraphValidationError,
    ConfigurationError,
    VariableResolutionError,
)

__all__ = [
    "VariableResolver",
    "EngineSettings",
    "load_env",
    "get_config",
    "ChatflowError",
    "GraphValidationError",
    "ConfigurationError",
    "VariableResolutionError",
]
