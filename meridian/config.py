# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Engine Configuration

Process-level knobs consumed by the dispatch core. Values come from
MERIDIAN_* environment variables when built with EngineConfig.from_env().

Example:
    from meridian.config import EngineConfig

    config = EngineConfig(disable_implicit_engine_preference=True)
    context = DispatchContext(config=config)
"""

import os
from dataclasses import dataclass

from .errors import ConfigurationError

_TRUE_VALUES = ("1", "true", "on", "yes")
_FALSE_VALUES = ("0", "false", "off", "no", "")


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(
        "Expected a boolean value", config_key=key, config_value=raw
    )


def _env_int(key: str, default: int) -> int:
    raw = os.environ.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(
            "Expected an integer value", config_key=key, config_value=raw
        ) from None


@dataclass
class EngineConfig:
    """
    Configuration for operator dispatch and execution.

    Attributes:
        disable_implicit_engine_preference: Only try engines listed explicitly
            in an operator definition (useful for unit tests and debugging).
        operator_max_engine_name_length: Maximum engine name length annotated
            on an operator instance.
        force_shared_col_buffer: Make convolution operators share one column
            buffer per workspace.
        rnn_executor: Allow RecurrentNetwork to use its step executor when the
            operator asks for it.
    """

    disable_implicit_engine_preference: bool = False
    operator_max_engine_name_length: int = 10
    force_shared_col_buffer: bool = False
    rnn_executor: bool = True

    def __post_init__(self):
        if self.operator_max_engine_name_length < 0:
            raise ConfigurationError(
                "Engine name length must be non-negative",
                config_key="operator_max_engine_name_length",
                config_value=str(self.operator_max_engine_name_length),
            )

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from MERIDIAN_* environment variables."""
        return cls(
            disable_implicit_engine_preference=_env_bool(
                "MERIDIAN_DISABLE_IMPLICIT_ENGINE_PREFERENCE", False
            ),
            operator_max_engine_name_length=_env_int(
                "MERIDIAN_OPERATOR_MAX_ENGINE_NAME_LENGTH", 10
            ),
            force_shared_col_buffer=_env_bool(
                "MERIDIAN_FORCE_SHARED_COL_BUFFER", False
            ),
            rnn_executor=_env_bool("MERIDIAN_RNN_EXECUTOR", True),
        )
