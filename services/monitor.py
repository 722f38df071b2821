"""
Preview monitoring script and index.html tag handling.

The script lives at /workspace/.shipper/monitor.js and is loaded through a
module <script> tag in the generated index.html. It reports runtime errors,
console errors, navigation and blank-screen detection to the parent window
via postMessage. Production builds strip the tag before deploying.
"""

import json
import re

MONITOR_DIR = "/workspace/.shipper"
MONITOR_SCRIPT_PATH = f"{MONITOR_DIR}/monitor.js"
MONITOR_SCRIPT_TAG = '<script type="module" src="/.shipper/monitor.js"></script>'
MONITOR_REFERENCE = ".shipper/monitor.js"

PRODUCTION_ORIGINS = ("https://app.shipper.now", "https://staging.shipper.now")

LEGACY_INLINE_MONITOR_RE = re.compile(
    r'<script type="module">[\s\S]*?MONITOR_INITIALIZED[\s\S]*?</script>\s*'
)
MONITOR_TAG_RE = re.compile(
    r"""<script[^>]*src=["']/\.shipper/monitor\.js["'][^>]*></script>\s*""",
    re.IGNORECASE,
)
BODY_OPEN_RE = re.compile(r"<body[^>]*>")

_SCRIPT_TEMPLATE = """(function () {
  "use strict";

  if (window.__SHIPPER_MONITOR__) return;
  window.__SHIPPER_MONITOR__ = true;

  const CONFIG = {
    ALLOWED_ORIGINS: __ALLOWED_ORIGINS__,
    DEBOUNCE_DELAY: 250,
    MAX_STRING_LENGTH: 10000,
  };

  function truncate(value) {
    const text = typeof value === "string" ? value : String(value);
    return text.length > CONFIG.MAX_STRING_LENGTH
      ? text.slice(0, CONFIG.MAX_STRING_LENGTH) + "..."
      : text;
  }

  function postToParent(message) {
    if (!window.parent || window.parent === window) return;
    CONFIG.ALLOWED_ORIGINS.forEach((origin) => {
      try {
        window.parent.postMessage(
          { ...message, timestamp: new Date().toISOString() },
          origin
        );
      } catch (err) {
        // origin mismatch; try the next one
      }
    });
  }

  function isBlankScreen() {
    const root = document.querySelector("div#root");
    return root ? root.childElementCount === 0 : false;
  }

  window.addEventListener("error", (event) => {
    postToParent({
      type: "RUNTIME_ERROR",
      error: {
        message: truncate(event.message || "Unknown error"),
        filename: event.filename,
        lineno: event.lineno,
        colno: event.colno,
        stack: event.error && event.error.stack ? truncate(event.error.stack) : undefined,
      },
    });
  });

  window.addEventListener("unhandledrejection", (event) => {
    const reason = event.reason;
    postToParent({
      type: "UNHANDLED_PROMISE_REJECTION",
      error: {
        message: truncate(reason && reason.message ? reason.message : reason),
        stack: reason && reason.stack ? truncate(reason.stack) : undefined,
      },
    });
  });

  const originalConsoleError = console.error;
  console.error = function (...args) {
    postToParent({
      type: "CONSOLE_OUTPUT",
      level: "error",
      message: truncate(args.map((arg) => (arg && arg.message) || String(arg)).join(" ")),
    });
    return originalConsoleError.apply(console, args);
  };

  let lastUrl = window.location.href;
  let urlTimer = null;
  function checkUrl() {
    clearTimeout(urlTimer);
    urlTimer = setTimeout(() => {
      if (window.location.href !== lastUrl) {
        lastUrl = window.location.href;
        postToParent({ type: "URL_CHANGED", url: lastUrl });
      }
    }, CONFIG.DEBOUNCE_DELAY);
  }
  window.addEventListener("popstate", checkUrl);
  window.addEventListener("hashchange", checkUrl);
  ["pushState", "replaceState"].forEach((method) => {
    const original = history[method];
    history[method] = function (...args) {
      const result = original.apply(this, args);
      checkUrl();
      return result;
    };
  });

  function reportContent() {
    setTimeout(() => {
      postToParent(
        isBlankScreen()
          ? { type: "BLANK_SCREEN_DETECTED", url: window.location.href }
          : { type: "CONTENT_LOADED", url: window.location.href }
      );
    }, 1000);
  }

  function init() {
    postToParent({ type: "MONITOR_INITIALIZED", url: window.location.href });
    reportContent();
  }

  if (document.readyState === "loading") {
    document.addEventListener("DOMContentLoaded", init);
  } else {
    init();
  }
})();
"""


def default_allowed_origins(app_url: str) -> list[str]:
    return [app_url or "http://localhost:3000", *PRODUCTION_ORIGINS]


def generate_monitor_script(allowed_origins: list[str]) -> str:
    return _SCRIPT_TEMPLATE.replace("__ALLOWED_ORIGINS__", json.dumps(allowed_origins))


def has_monitor_tag(html: str) -> bool:
    return MONITOR_REFERENCE in html


def strip_legacy_monitor(html: str) -> str:
    """Remove the old inline-module variant of the monitor."""
    if "MONITOR_INITIALIZED" not in html:
        return html
    return LEGACY_INLINE_MONITOR_RE.sub("", html)


def inject_monitor_tag(html: str) -> str:
    """
    Insert the monitor <script> tag.

    Preference: before </head>, then right after <body ...>, then prepended.
    Returns the input unchanged if the tag is already present.
    """
    if has_monitor_tag(html):
        return html

    html = strip_legacy_monitor(html)

    if "</head>" in html:
        return html.replace("</head>", f"  {MONITOR_SCRIPT_TAG}\n  </head>", 1)

    match = BODY_OPEN_RE.search(html)
    if match:
        return html[:match.end()] + f"\n  {MONITOR_SCRIPT_TAG}" + html[match.end():]

    return f"{MONITOR_SCRIPT_TAG}\n{html}"


def strip_monitor_tag(html: str) -> str:
    """Remove the monitor tag so dev-only instrumentation never ships."""
    return MONITOR_TAG_RE.sub("", html)
