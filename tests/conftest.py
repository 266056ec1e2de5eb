"""
Pytest configuration and shared fixtures.
"""

import pytest

from qvc.metrics import VolumeMetrics


@pytest.fixture
def metrics():
    """A VolumeMetrics with its own registry for each test."""
    return VolumeMetrics()
