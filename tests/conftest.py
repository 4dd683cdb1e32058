"""Shared pytest fixtures for parsedice tests."""

import pytest

import parsedice


@pytest.fixture
def seeded():
    """Seed the shared dice generator so rolls are reproducible."""
    parsedice.seed(1234)
    return parsedice
