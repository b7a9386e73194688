"""
Widget Loader
Loader URL, marker-delimited theme snippet and the bootstrap script served
to storefronts.
"""

import json
import re
from typing import Optional
from urllib.parse import urlencode

LOADER_PATH = "/api/widget-loader.js"

START_MARKER = "<!-- genie-chat-widget:start -->"
END_MARKER = "<!-- genie-chat-widget:end -->"

_SNIPPET_PATTERN = re.compile(
    re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER) + r"\n?",
    re.DOTALL,
)
_BODY_CLOSE_PATTERN = re.compile(r"</body\s*>", re.IGNORECASE)


def build_loader_url(public_base_url: str, shop_domain: str) -> str:
    base = public_base_url.rstrip("/")
    return f"{base}{LOADER_PATH}?{urlencode({'shop': shop_domain, 'api': base})}"


def render_snippet(loader_url: str) -> str:
    """Loader <script> reference wrapped in the idempotency markers"""
    return f'{START_MARKER}\n<script src="{loader_url}" defer></script>\n{END_MARKER}\n'


def has_snippet(content: Optional[str]) -> bool:
    return bool(content) and START_MARKER in content


def inject_snippet(content: str, snippet: str) -> str:
    """Splice the snippet before the last closing body tag (append if none)"""
    matches = list(_BODY_CLOSE_PATTERN.finditer(content))
    if not matches:
        separator = "" if content.endswith("\n") or not content else "\n"
        return f"{content}{separator}{snippet}"

    position = matches[-1].start()
    return content[:position] + snippet + content[position:]


def strip_snippet(content: str) -> str:
    """Remove every marker-delimited block (non-greedy)"""
    return _SNIPPET_PATTERN.sub("", content)


BOOTSTRAP_TEMPLATE = """(function () {
  'use strict';
  if (window.__genieChatLoaded) { return; }
  window.__genieChatLoaded = true;

  var current = document.currentScript || document.querySelector('script[src*="widget-loader.js"]');
  var params = new URLSearchParams(((current && current.src) || '').split('?')[1] || '');
  var shop = params.get('shop') || (window.Shopify && window.Shopify.shop) || %(shop)s;
  var api = params.get('api') || %(api)s;
  if (!shop) { return; }

  var script = document.createElement('script');
  script.src = %(bundle)s + '?shop=' + encodeURIComponent(shop) + '&api=' + encodeURIComponent(api);
  script.async = true;
  (document.body || document.head).appendChild(script);
})();
"""


def render_bootstrap_script(shop: Optional[str], api_base_url: str, widget_bundle_url: str) -> str:
    """Small script that resolves the shop and injects the real widget bundle"""
    return BOOTSTRAP_TEMPLATE % {
        "shop": json.dumps(shop or ""),
        "api": json.dumps(api_base_url.rstrip("/")),
        "bundle": json.dumps(widget_bundle_url),
    }
