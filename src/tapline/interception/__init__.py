"""tapline.interception -- URL matching, extraction, hook sources, correlation.

Architecture::

    matching.py     UrlMatcher (pattern / alternates / heuristic)
    extraction.py   parse_json_body + extract_path
    events.py       channel message vocabulary + ExchangeEvent
    hooks.py        settings script, page hook, network rule
    bridge.py       InterceptionBridge (correlate, extract, dedup, persist)
"""

from .bridge import InterceptionBridge
from .events import ExchangeEvent, HookLayer, MessageType
from .extraction import extract_from_body, extract_path, parse_json_body
from .hooks import (
    PAGE_HOOK_MARKER,
    PAGE_HOOK_SCRIPT,
    HookConfig,
    render_network_rule,
    render_settings_script,
)
from .matching import HEURISTIC_PATTERNS, UrlMatcher

__all__ = [
    "ExchangeEvent",
    "HEURISTIC_PATTERNS",
    "HookConfig",
    "HookLayer",
    "InterceptionBridge",
    "MessageType",
    "PAGE_HOOK_MARKER",
    "PAGE_HOOK_SCRIPT",
    "UrlMatcher",
    "extract_from_body",
    "extract_path",
    "parse_json_body",
    "render_network_rule",
    "render_settings_script",
]
