"""
Pulse Hub — Tracking Pixel
============================

Creates tracking_pixels rows and renders the browser snippet that posts
events to ``/api/track/event``.
"""
from __future__ import annotations

import json
import secrets
from typing import Dict, List, Optional

from scripts.lib.errors import SchemaValidationError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import insert_row
from scripts.lib.validation import sanitize_input

logger = setup_logger("pixel")

DEFAULT_CONVERSION_EVENTS = ["form_submission", "purchase"]

PIXEL_JS = """(function() {
  var PIXEL_ID = __PIXEL_ID__;
  var API_URL = __API_URL__;

  function getSessionId() {
    var sessionId = localStorage.getItem('pulse_session_id');
    if (!sessionId) {
      sessionId = 'sess_' + Date.now() + '_' + Math.random().toString(36).substr(2, 9);
      localStorage.setItem('pulse_session_id', sessionId);
    }
    return sessionId;
  }

  function captureUrlParams() {
    var params = new URLSearchParams(window.location.search);
    var utm = {};
    ['source', 'medium', 'campaign', 'term', 'content'].forEach(function(key) {
      var value = params.get('utm_' + key);
      if (value) utm[key] = value;
    });
    var clickIds = {};
    ['fbclid', 'gclid', 'ttclid'].forEach(function(key) {
      var value = params.get(key);
      if (value) clickIds[key] = value;
    });
    if (Object.keys(utm).length) localStorage.setItem('pulse_utm', JSON.stringify(utm));
    if (Object.keys(clickIds).length) localStorage.setItem('pulse_click_ids', JSON.stringify(clickIds));
  }

  function getDeviceInfo() {
    var ua = navigator.userAgent;
    var deviceType = /tablet/i.test(ua) ? 'tablet' : (/mobile/i.test(ua) ? 'mobile' : 'desktop');
    var browser = 'unknown';
    if (ua.indexOf('Edg') > -1) browser = 'edge';
    else if (ua.indexOf('Chrome') > -1) browser = 'chrome';
    else if (ua.indexOf('Safari') > -1) browser = 'safari';
    else if (ua.indexOf('Firefox') > -1) browser = 'firefox';
    var os = 'unknown';
    if (ua.indexOf('Windows') > -1) os = 'windows';
    else if (ua.indexOf('Android') > -1) os = 'android';
    else if (/iPhone|iPad|iPod/.test(ua)) os = 'ios';
    else if (ua.indexOf('Mac') > -1) os = 'macos';
    else if (ua.indexOf('Linux') > -1) os = 'linux';
    return { userAgent: ua, deviceType: deviceType, browser: browser, os: os };
  }

  function track(eventType, data) {
    var payload = Object.assign({
      pixelId: PIXEL_ID,
      sessionId: getSessionId(),
      eventType: eventType,
      pageUrl: window.location.href,
      referrerUrl: document.referrer,
      utm: JSON.parse(localStorage.getItem('pulse_utm') || '{}'),
      clickIds: JSON.parse(localStorage.getItem('pulse_click_ids') || '{}'),
      deviceInfo: getDeviceInfo()
    }, data || {});
    fetch(API_URL, {
      method: 'POST',
      headers: { 'Content-Type': 'application/json' },
      body: JSON.stringify(payload),
      keepalive: true
    }).catch(function(err) { console.warn('Tracking failed:', err); });
  }

  function init() {
    captureUrlParams();
    track('page_view', { eventName: 'Page View' });

    document.addEventListener('submit', function(e) {
      var form = e.target;
      if (form.tagName !== 'FORM') return;
      var formData = {};
      var contactInfo = {};
      new FormData(form).forEach(function(value, key) {
        formData[key] = value;
        var lower = key.toLowerCase();
        if (lower.indexOf('email') > -1) contactInfo.email = value;
        if (lower.indexOf('phone') > -1) contactInfo.phone = value;
        if (lower.indexOf('name') > -1) contactInfo.name = value;
      });
      track('form_submission', { eventName: 'Form Submission', formData: formData, contactInfo: contactInfo });
    });

    document.addEventListener('click', function(e) {
      var el = e.target.closest && e.target.closest('a[href*="checkout"], button[class*="buy"], button[class*="purchase"]');
      if (!el) return;
      track('click', {
        eventName: 'Purchase Intent Click',
        customData: { elementText: el.textContent, elementClass: el.className, elementHref: el.href }
      });
    });
  }

  window.trackEvent = function(eventType, data) { track(eventType, data); };
  window.trackPurchase = function(amount, currency, customerInfo) {
    track('purchase', {
      eventName: 'Purchase',
      revenue: { amount: parseFloat(amount), currency: currency || 'USD' },
      contactInfo: customerInfo || {}
    });
  };

  if (document.readyState === 'loading') document.addEventListener('DOMContentLoaded', init);
  else init();
})();
"""


def pixel_javascript(pixel_id: str, api_base_url: str) -> str:
    """Bare JavaScript for one pixel, as served from /api/track/pixel/{id}.js."""
    endpoint = f"{api_base_url.rstrip('/')}/api/track/event"
    return (
        PIXEL_JS
        .replace("__PIXEL_ID__", json.dumps(pixel_id))
        .replace("__API_URL__", json.dumps(endpoint))
    )


def generate_pixel_script(pixel_id: str, api_base_url: str) -> str:
    """Render the installable ``<script>`` snippet for one pixel."""
    return (
        "<!-- Pulse Hub Tracking Pixel -->\n<script>\n"
        f"{pixel_javascript(pixel_id, api_base_url)}"
        "</script>\n"
    )


def new_pixel_id() -> str:
    return f"px_{secrets.token_hex(8)}"


def create_pixel(project_id: str, name: str, domains: Optional[List[str]] = None,
                 conversion_events: Optional[List[str]] = None,
                 config: Optional[Dict] = None) -> Dict:
    """
    Insert a new active pixel for a project.

    Raises:
        SchemaValidationError: project_id or name missing.
    """
    name = sanitize_input(name or "")
    if not project_id or not name:
        raise SchemaValidationError("project_id and name are required", field="name")

    cleaned_domains = [d.strip().lower() for d in (domains or []) if d and d.strip()]
    pixel = insert_row("tracking_pixels", {
        "project_id": project_id,
        "pixel_id": new_pixel_id(),
        "name": name,
        "domains": cleaned_domains or None,
        "conversion_events": conversion_events or list(DEFAULT_CONVERSION_EVENTS),
        "config": config or {},
        "is_active": True,
    })
    if pixel is None:
        raise RuntimeError("Failed to create pixel")
    logger.info("Created pixel %s for project %s", pixel.get("pixel_id"), project_id)
    return pixel
