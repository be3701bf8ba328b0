"""Tests for the pure worker-context status machine."""

import pytest

from tapline.sandbox.worker import TERMINAL_STATUSES, ContextEvent, ContextStatus, transition

S = ContextStatus
E = ContextEvent

LIVE = [S.LOADING, S.INJECTING, S.READY, S.TRACKING]


class TestHappyPath:
    """LOADING → INJECTING → READY → TRACKING → COMPLETED."""

    @pytest.mark.parametrize(
        "status, event, expected",
        [
            (S.LOADING, E.LOAD_STARTED, S.INJECTING),
            (S.INJECTING, E.HOOKS_READY, S.READY),
            (S.INJECTING, E.EXCHANGE_CAPTURED, S.TRACKING),
            (S.READY, E.EXCHANGE_CAPTURED, S.TRACKING),
            (S.READY, E.OBSERVATION_ELAPSED, S.COMPLETED),
            (S.TRACKING, E.OBSERVATION_ELAPSED, S.COMPLETED),
        ],
    )
    def test_edges(self, status, event, expected):
        assert transition(status, event) == expected


class TestNoOps:
    """Events that do not apply leave the status alone."""

    @pytest.mark.parametrize(
        "status, event",
        [
            (S.LOADING, E.HOOKS_READY),
            (S.LOADING, E.OBSERVATION_ELAPSED),
            (S.INJECTING, E.OBSERVATION_ELAPSED),
            (S.INJECTING, E.LOAD_STARTED),
            (S.TRACKING, E.EXCHANGE_CAPTURED),
            (S.READY, E.HOOKS_READY),
        ],
    )
    def test_unchanged(self, status, event):
        assert transition(status, event) == status

    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    @pytest.mark.parametrize("event", list(ContextEvent))
    def test_terminal_is_absorbing(self, status, event):
        assert transition(status, event) == status


class TestAbnormalEnds:
    """TIMEOUT / FAILED / REMOVED from any live status."""

    @pytest.mark.parametrize("status", LIVE)
    def test_timeout(self, status):
        assert transition(status, E.TIMEOUT) == S.TIMED_OUT

    @pytest.mark.parametrize("status", LIVE)
    def test_failed(self, status):
        assert transition(status, E.FAILED) == S.ERROR

    def test_removed_while_tracking_completes(self):
        assert transition(S.TRACKING, E.REMOVED) == S.COMPLETED

    @pytest.mark.parametrize("status", [S.LOADING, S.INJECTING, S.READY])
    def test_removed_before_capture_errors(self, status):
        assert transition(status, E.REMOVED) == S.ERROR
