"""Pytest fixtures for sandbox tests."""

import pytest

from tapline.interception.bridge import InterceptionBridge
from tapline.interception.matching import UrlMatcher
from tapline.sandbox.worker import WorkerContextManager
from tapline.scheduling.state import OrchestratorState


@pytest.fixture
def state():
    return OrchestratorState()


@pytest.fixture
def bridge(store, fast_settings):
    return InterceptionBridge(
        store,
        UrlMatcher(fast_settings.url_pattern, tuple(fast_settings.alternate_patterns)),
        fast_settings.extraction_path,
        dedup_window_seconds=fast_settings.dedup_window_seconds,
    )


@pytest.fixture
def make_manager(bridge, state, fast_settings):
    """Factory for a WorkerContextManager bound to ``platform``."""

    def _make(platform, **overrides):
        settings = fast_settings.model_copy(update=overrides) if overrides else fast_settings
        return WorkerContextManager(platform, bridge, state, settings)

    return _make


@pytest.fixture
def schedule(make_schedule):
    return make_schedule(due=False)
