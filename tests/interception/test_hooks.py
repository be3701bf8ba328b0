"""Tests for the injected hook sources."""

import json

import pytest

from tapline.interception.hooks import (
    NETWORK_RULE_KIND,
    PAGE_HOOK_MARKER,
    PAGE_HOOK_SCRIPT,
    RELAY_BINDING,
    SETTINGS_GLOBAL,
    HookConfig,
    parse_network_rule,
    render_network_rule,
    render_settings_script,
)
from tapline.interception.matching import UrlMatcher


@pytest.fixture
def config():
    return HookConfig(
        schedule_id="s1",
        target_id="t1",
        sandbox_id="sbx-1",
        matcher=UrlMatcher("api/v4/pdp/get_pc", ("/api/v4/item/get",)),
        heartbeat_interval_seconds=2.5,
    )


class TestSettingsScript:
    """Settings object published to the page."""

    def test_payload(self, config):
        payload = config.settings_payload()
        assert payload["TRACKING_STOCK_LINK"] == "api/v4/pdp/get_pc"
        assert payload["ALTERNATE_PATTERNS"] == ["/api/v4/item/get"]
        assert payload["SCHEDULE_ID"] == "s1"
        assert payload["LINK_ID"] == "t1"
        assert payload["SANDBOX_ID"] == "sbx-1"
        assert payload["HEARTBEAT_MS"] == 2500
        assert "api/" in payload["HEURISTIC_PATTERNS"]
        assert payload["INJECTED_AT"]

    def test_render(self, config):
        script = render_settings_script(config)
        prefix = f"window.{SETTINGS_GLOBAL} = Object.freeze("
        assert script.startswith(prefix)
        assert script.endswith(");")
        payload = json.loads(script[len(prefix) : -2])
        assert payload["SANDBOX_ID"] == "sbx-1"

    def test_settings_script_is_not_the_hook(self, config):
        assert PAGE_HOOK_MARKER not in render_settings_script(config)


class TestNetworkRule:
    """Network-layer rule."""

    def test_round_trip(self, config):
        rule = parse_network_rule(render_network_rule(config))
        assert rule["kind"] == NETWORK_RULE_KIND
        assert rule["sandbox_id"] == "sbx-1"
        assert rule["capture_bodies"] is True
        assert UrlMatcher.from_dict(rule["matcher"]) == config.matcher

    @pytest.mark.parametrize("code", ['{"kind": "other"}', "[1, 2]", "window.x = 1;"])
    def test_rejects_other_code(self, code):
        with pytest.raises(ValueError):
            parse_network_rule(code)


class TestPageHookScript:
    """Static page hook source."""

    def test_reads_settings_and_relays(self):
        assert SETTINGS_GLOBAL in PAGE_HOOK_SCRIPT
        assert RELAY_BINDING in PAGE_HOOK_SCRIPT
        assert PAGE_HOOK_MARKER in PAGE_HOOK_SCRIPT

    def test_patches_both_apis(self):
        assert "window.fetch = async function" in PAGE_HOOK_SCRIPT
        assert "XMLHttpRequest.prototype" in PAGE_HOOK_SCRIPT

    def test_emits_channel_vocabulary(self):
        for kind in ("HOOK_READY", "HEARTBEAT", "EXCHANGE_STARTED", "EXCHANGE_COMPLETED", "EXCHANGE_FAILED"):
            assert f"'{kind}'" in PAGE_HOOK_SCRIPT

    def test_marker_guards_reinstall(self):
        assert f"if (window.{PAGE_HOOK_MARKER})" in PAGE_HOOK_SCRIPT
        assert f"window.{PAGE_HOOK_MARKER} = true;" in PAGE_HOOK_SCRIPT
        assert f"window.{RELAY_BINDING};" in PAGE_HOOK_SCRIPT
        assert f"window.{SETTINGS_GLOBAL};" in PAGE_HOOK_SCRIPT

    def test_no_unfilled_placeholders(self):
        for placeholder in ("__HOOK_MARKER__", "__RELAY_BINDING__", "__SETTINGS_GLOBAL__"):
            assert placeholder not in PAGE_HOOK_SCRIPT

    def test_urls_resolved_against_page(self):
        assert "new URL(url, window.location.href).href" in PAGE_HOOK_SCRIPT
        assert "url = absolute(url);" in PAGE_HOOK_SCRIPT
        assert "absolute(typeof url === 'string' ? url : String(url))" in PAGE_HOOK_SCRIPT
