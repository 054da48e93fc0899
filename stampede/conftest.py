"""
Pytest configuration and fixtures for stampede.

This module provides shared fixtures and configuration for all test modules.
"""

import httpx
import pytest
from hypothesis import settings, Verbosity

from .metrics import MetricsRegistry, register_builtin_metrics

# Configure Hypothesis profiles
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.verbose,
    deadline=None,
)

settings.register_profile(
    "dev",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)


def pytest_configure(config):
    """Configure pytest with custom settings."""
    # Load the default hypothesis profile
    settings.load_profile("default")


@pytest.fixture
def registry():
    """A registry with every built-in metric defined."""
    registry = MetricsRegistry()
    register_builtin_metrics(registry)
    return registry


@pytest.fixture
def echo_transport():
    """Mock transport answering 200 with the request path, 500 for /fail, 404 for /missing."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/fail":
            return httpx.Response(500, text="boom")
        if request.url.path == "/missing":
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json={"path": request.url.path, "items": [{"id": 7}]})

    return httpx.MockTransport(handler)
