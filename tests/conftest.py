"""Shared test fixtures."""

from __future__ import annotations

import sys

import pytest
from loguru import logger


@pytest.fixture(autouse=True)
def _reset_logging():
    """Point loguru back at the real stderr once a test that reconfigured it is done."""
    yield
    logger.remove()
    logger.add(sys.__stderr__, level="WARNING")
