"""Hook sources injected into a sandbox.

Three pieces of code go into every sandbox, in this order:

    1. settings script   (PAGE)     window.__TAPLINE_SETTINGS__ = {...}
    2. PAGE_HOOK_SCRIPT  (PAGE)     patches fetch + XMLHttpRequest
    3. network rule      (NETWORK)  JSON that arms the platform's network layer

The page hook reads its predicate from the settings object and relays
channel messages (see ``events``) through ``window.__taplineRelay``, a
binding the platform exposes. Installing it twice is a no-op apart from
re-announcing readiness, so injection retries are safe.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .matching import UrlMatcher

SETTINGS_GLOBAL = "__TAPLINE_SETTINGS__"
RELAY_BINDING = "__taplineRelay"
PAGE_HOOK_MARKER = "__taplineHooked"
NETWORK_RULE_KIND = "tapline.network-rule"


@dataclass
class HookConfig:
    """Per-sandbox configuration shared by both hooks."""

    schedule_id: str
    target_id: str
    sandbox_id: str
    matcher: UrlMatcher = field(default_factory=UrlMatcher)
    heartbeat_interval_seconds: float = 10.0

    def settings_payload(self) -> dict[str, Any]:
        return {
            "TRACKING_STOCK_LINK": self.matcher.pattern,
            "ALTERNATE_PATTERNS": list(self.matcher.alternates),
            "HEURISTIC_PATTERNS": self.matcher.to_dict()["heuristics"],
            "SCHEDULE_ID": self.schedule_id,
            "LINK_ID": self.target_id,
            "SANDBOX_ID": self.sandbox_id,
            "HEARTBEAT_MS": int(self.heartbeat_interval_seconds * 1000),
            "INJECTED_AT": datetime.now(UTC).isoformat(),
        }


def render_settings_script(config: HookConfig) -> str:
    """JS statement publishing the shared settings object to the page."""
    payload = json.dumps(config.settings_payload())
    return f"window.{SETTINGS_GLOBAL} = Object.freeze({payload});"


def render_network_rule(config: HookConfig) -> str:
    """Network-layer hook configuration, consumed by the platform."""
    return json.dumps(
        {
            "kind": NETWORK_RULE_KIND,
            "schedule_id": config.schedule_id,
            "sandbox_id": config.sandbox_id,
            "matcher": config.matcher.to_dict(),
            "capture_bodies": True,
        }
    )


def parse_network_rule(code: str) -> dict[str, Any]:
    """Decode a network rule.

    Raises:
        ValueError: Not a network rule
    """
    rule = json.loads(code)
    if not isinstance(rule, dict) or rule.get("kind") != NETWORK_RULE_KIND:
        raise ValueError("Not a tapline network rule")
    return rule


_PAGE_HOOK_TEMPLATE = r"""
(() => {
  const relay = (msg) => {
    const fn = window.__RELAY_BINDING__;
    if (typeof fn === 'function') {
      try { fn(msg); } catch (e) { /* relay gone with the page */ }
    }
  };

  if (window.__HOOK_MARKER__) {
    relay({ type: 'HOOK_READY', layer: 'page' });
    return;
  }

  const settings = window.__SETTINGS_GLOBAL__;
  if (!settings) {
    throw new Error('tapline: settings missing');
  }
  window.__HOOK_MARKER__ = true;

  const pattern = (settings.TRACKING_STOCK_LINK || '').trim();
  const alternates = settings.ALTERNATE_PATTERNS || [];
  const heuristics = settings.HEURISTIC_PATTERNS || [];

  const matches = (url) => {
    if (!url) return false;
    if (!pattern) {
      const lowered = url.toLowerCase();
      return heuristics.some((p) => lowered.includes(p));
    }
    if (url.toLowerCase().includes(pattern.toLowerCase())) return true;
    return alternates.some((p) => url.includes(p));
  };

  const absolute = (url) => {
    try { return new URL(url, window.location.href).href; } catch (e) { return url; }
  };

  let counter = 0;
  const nextId = (prefix) => `${prefix}_${Date.now()}_${++counter}`;

  const headersToObject = (headers) => {
    const out = {};
    if (!headers) return out;
    if (headers instanceof Headers) {
      headers.forEach((v, k) => { out[k.toLowerCase()] = v; });
    } else if (Array.isArray(headers)) {
      headers.forEach(([k, v]) => { out[String(k).toLowerCase()] = String(v); });
    } else {
      Object.entries(headers).forEach(([k, v]) => { out[k.toLowerCase()] = String(v); });
    }
    return out;
  };

  const bodyToText = (body) => {
    if (body === undefined || body === null) return null;
    return typeof body === 'string' ? body : String(body);
  };

  // fetch
  const originalFetch = window.fetch;
  window.fetch = async function (input, init) {
    let url = '';
    let method = 'GET';
    if (typeof input === 'string') url = input;
    else if (input instanceof URL) url = input.toString();
    else if (input instanceof Request) { url = input.url; method = input.method; }
    url = absolute(url);

    if (!matches(url)) {
      return originalFetch.call(this, input, init);
    }

    method = ((init && init.method) || method).toUpperCase();
    const id = nextId('fetch');
    relay({
      type: 'EXCHANGE_STARTED', layer: 'page', id, url, method,
      requestHeaders: headersToObject(init && init.headers),
      requestBody: bodyToText(init && init.body),
      timestamp: Date.now(),
    });

    try {
      const response = await originalFetch.call(this, input, init);
      response.clone().text().then((text) => {
        relay({
          type: 'EXCHANGE_COMPLETED', layer: 'page', id, url, method,
          status: response.status, statusText: response.statusText,
          responseHeaders: headersToObject(response.headers),
          responseBody: text, timestamp: Date.now(),
        });
      }, (err) => {
        relay({
          type: 'EXCHANGE_COMPLETED', layer: 'page', id, url, method,
          status: response.status, statusText: response.statusText,
          responseHeaders: headersToObject(response.headers),
          responseBody: null, timestamp: Date.now(),
        });
      });
      return response;
    } catch (err) {
      relay({
        type: 'EXCHANGE_FAILED', layer: 'page', id, url, method,
        error: String(err && err.message ? err.message : err), timestamp: Date.now(),
      });
      throw err;
    }
  };

  // XMLHttpRequest
  const proto = XMLHttpRequest.prototype;
  const originalOpen = proto.open;
  const originalSend = proto.send;
  const originalSetRequestHeader = proto.setRequestHeader;

  proto.open = function (method, url) {
    const urlString = absolute(typeof url === 'string' ? url : String(url));
    this.__tapline = matches(urlString)
      ? { id: nextId('xhr'), method: String(method || 'GET').toUpperCase(), url: urlString, headers: {} }
      : null;
    return originalOpen.apply(this, arguments);
  };

  proto.setRequestHeader = function (name, value) {
    if (this.__tapline) this.__tapline.headers[String(name).toLowerCase()] = String(value);
    return originalSetRequestHeader.apply(this, arguments);
  };

  proto.send = function (body) {
    const info = this.__tapline;
    if (info) {
      const xhr = this;
      relay({
        type: 'EXCHANGE_STARTED', layer: 'page', id: info.id, url: info.url, method: info.method,
        requestHeaders: info.headers, requestBody: bodyToText(body), timestamp: Date.now(),
      });
      xhr.addEventListener('loadend', () => {
        if (xhr.status === 0) {
          relay({
            type: 'EXCHANGE_FAILED', layer: 'page', id: info.id, url: info.url,
            method: info.method, error: 'XHR failed', timestamp: Date.now(),
          });
          return;
        }
        const responseHeaders = {};
        (xhr.getAllResponseHeaders() || '').trim().split(/[\r\n]+/).forEach((line) => {
          const idx = line.indexOf(':');
          if (idx > 0) responseHeaders[line.slice(0, idx).trim().toLowerCase()] = line.slice(idx + 1).trim();
        });
        let text = null;
        try {
          text = (xhr.responseType === '' || xhr.responseType === 'text') ? xhr.responseText : null;
        } catch (e) { text = null; }
        relay({
          type: 'EXCHANGE_COMPLETED', layer: 'page', id: info.id, url: info.url, method: info.method,
          status: xhr.status, statusText: xhr.statusText, responseHeaders,
          responseBody: text, timestamp: Date.now(),
        });
      });
    }
    return originalSend.apply(this, arguments);
  };

  setInterval(() => relay({ type: 'HEARTBEAT', layer: 'page', timestamp: Date.now() }),
    settings.HEARTBEAT_MS || 10000);

  relay({ type: 'HOOK_READY', layer: 'page' });
})();
"""

PAGE_HOOK_SCRIPT = (
    _PAGE_HOOK_TEMPLATE.replace("__HOOK_MARKER__", PAGE_HOOK_MARKER)
    .replace("__RELAY_BINDING__", RELAY_BINDING)
    .replace("__SETTINGS_GLOBAL__", SETTINGS_GLOBAL)
)


__all__ = [
    "HookConfig",
    "NETWORK_RULE_KIND",
    "PAGE_HOOK_MARKER",
    "PAGE_HOOK_SCRIPT",
    "RELAY_BINDING",
    "SETTINGS_GLOBAL",
    "parse_network_rule",
    "render_network_rule",
    "render_settings_script",
]
