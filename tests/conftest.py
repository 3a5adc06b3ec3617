"""Shared fixtures for peerdm tests."""

import pytest

from peerdm.core.identity import Identity


@pytest.fixture
def alice():
    return Identity.generate()


@pytest.fixture
def bob():
    return Identity.generate()


@pytest.fixture
def mallory():
    return Identity.generate()
