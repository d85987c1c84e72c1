# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Pytest configuration for Meridian Python tests.
"""

import sys
from pathlib import Path

import pytest

# Add the project root to sys.path so we can import meridian
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import meridian  # noqa: E402
from meridian import DispatchContext, EngineConfig, Workspace  # noqa: E402
from meridian.observability import MeridianLogger  # noqa: E402


@pytest.fixture
def config():
    """Default config, independent of MERIDIAN_* environment variables."""
    return EngineConfig()


@pytest.fixture
def context(config):
    """Isolated context holding the builtin operators."""
    return meridian.get_default_context().fork(config=config)


@pytest.fixture
def bare_context(config):
    """Isolated context without any operator registered."""
    return DispatchContext(config=config)


@pytest.fixture
def ws(context):
    return Workspace(context=context)


@pytest.fixture(autouse=True)
def fresh_logger():
    MeridianLogger.reset()
    yield
    MeridianLogger.reset()
