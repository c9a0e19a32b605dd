"""Shared fixtures for procreg tests."""

import pytest

from procreg.registry import Registry, create_registry


@pytest.fixture
def registry():
    """A registry that kills everything it spawned on teardown."""
    reg: Registry = create_registry("test")
    yield reg
    reg.close()
