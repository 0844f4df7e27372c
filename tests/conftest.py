"""
Pytest configuration and fixtures for pyplayground tests.
"""

import logging
import os

import pytest
from hypothesis import Verbosity, settings

from pyplayground.core.config import SandboxConfig
from pyplayground.core.logging import PACKAGE_LOGGER
from pyplayground.execution.host import ExecutionHost

# Configure hypothesis settings for property-based testing
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,  # Disable deadline for slow operations
)

settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.register_profile(
    "dev",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


@pytest.fixture(autouse=True)
def _restore_package_logger():
    """Undo setup_logging() so caplog keeps seeing package records."""
    yield
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_pyplayground_handler", False):
            logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def sandbox_config() -> SandboxConfig:
    """Sandbox config that keeps guest prints off the test output."""
    return SandboxConfig(echo_output=False)


@pytest.fixture
def host(sandbox_config: SandboxConfig):
    """Execution host backed by real guest processes."""
    with ExecutionHost(sandbox_config) as h:
        yield h
