"""Pytest fixtures for scheduling tests."""

import pytest

from tapline.sandbox.memory import MemorySandboxPlatform
from tapline.scheduling import create_orchestrator


@pytest.fixture
def platform(exchange_messages):
    """Memory platform whose sandboxes each see one product-detail exchange."""
    return MemorySandboxPlatform(messages=exchange_messages())


@pytest.fixture
def make_orchestrator(conn, fast_settings):
    """Factory for an orchestrator over the shared test connection.

    Keyword overrides are applied to ``fast_settings``.
    """

    def _make(platform, **overrides):
        settings = fast_settings.model_copy(update=overrides) if overrides else fast_settings
        return create_orchestrator(conn, platform, settings)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator, platform):
    return make_orchestrator(platform)
