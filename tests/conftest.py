"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient

from flowsim.config import get_testing_config, reset_config
from flowsim.core.handler_registry import NodeHandlerRegistry
from flowsim.core.http_client import SimulatedHttpClient
from flowsim.core.simulator import WorkflowSimulator
from flowsim.factory import create_app
from flowsim.handlers import register_default_handlers


@pytest.fixture
def testing_config():
    """Configuration used by engine and API tests."""
    return get_testing_config()


@pytest.fixture
def registry():
    """A fresh registry holding the built-in handlers."""
    handler_registry = NodeHandlerRegistry()
    register_default_handlers(handler_registry)
    return handler_registry


@pytest.fixture
def simulator(testing_config, registry):
    """Simulator wired to the simulated HTTP client."""
    return WorkflowSimulator(registry=registry, http_client=SimulatedHttpClient(), config=testing_config)


@pytest.fixture
def client(testing_config):
    """Create a test client; the context manager runs the app lifespan."""
    app = create_app(testing_config)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture(autouse=True)
def clean_config():
    """Drop the cached process-wide configuration around every test."""
    reset_config()
    yield
    reset_config()
