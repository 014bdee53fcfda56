# Kindle Cloud Reader Capture
# Copyright (C) 2018 lfasmpao
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.
"""
Page turning and render detection inside the reader page.

The helper script is injected once into the reader and answers small
request messages. The Python classes below wrap those requests; a helper
that does not answer is reported as ``None`` so callers can fall back.
"""
import logging

logger = logging.getLogger(__name__)

# Time without DOM mutations before a page counts as settled
QUIET_PERIOD_MS = 400
DEFAULT_TURN_TIMEOUT_MS = 3000
INJECT_SETTLE = 0.3

HELPER_JS = """
(function () {
    if (window.__kindleCapture) return;

    var QUIET_MS = %(quiet_ms)d;
    var NEAR_WHITE = 245;
    var MIN_ALPHA = 10;
    var SAMPLE_POINTS = [[0.5, 0.5], [0.3, 0.35], [0.7, 0.65]];
    var LOADING_SELECTORS = [
        '[class*="loading"]', '[class*="Loading"]', '[class*="spinner"]',
        '[class*="Spinner"]', '[class*="loader"]', '[aria-busy="true"]'
    ];
    var lastMutation = Date.now();

    new MutationObserver(function () {
        lastMutation = Date.now();
    }).observe(document.documentElement, {
        childList: true, subtree: true, attributes: true, characterData: true
    });

    function isVisible(el) {
        if (el.offsetParent === null && el.tagName !== 'BODY') return false;
        var rect = el.getBoundingClientRect();
        return rect.width > 0 && rect.height > 0 &&
            rect.bottom > 0 && rect.top < window.innerHeight &&
            rect.right > 0 && rect.left < window.innerWidth;
    }

    function imagesLoaded() {
        var imgs = document.querySelectorAll('img');
        for (var i = 0; i < imgs.length; i++) {
            if (isVisible(imgs[i]) && !imgs[i].complete) return false;
        }
        return true;
    }

    // A canvas that is still all near-white or transparent at the sample
    // points has not been painted yet.
    function canvasesPainted() {
        var canvases = document.querySelectorAll('canvas');
        for (var i = 0; i < canvases.length; i++) {
            var c = canvases[i];
            if (!isVisible(c) || c.width < 2 || c.height < 2) continue;
            var ctx;
            try {
                ctx = c.getContext('2d');
            } catch (e) {
                continue;
            }
            if (!ctx) continue;
            var painted = false;
            for (var j = 0; j < SAMPLE_POINTS.length; j++) {
                var x = Math.floor(c.width * SAMPLE_POINTS[j][0]);
                var y = Math.floor(c.height * SAMPLE_POINTS[j][1]);
                var px;
                try {
                    px = ctx.getImageData(x, y, 1, 1).data;
                } catch (e) {
                    painted = true;  // tainted canvas, cannot tell
                    break;
                }
                var white = px[0] >= NEAR_WHITE && px[1] >= NEAR_WHITE && px[2] >= NEAR_WHITE;
                if (px[3] >= MIN_ALPHA && !white) {
                    painted = true;
                    break;
                }
            }
            if (!painted) return false;
        }
        return true;
    }

    function loadingVisible() {
        for (var i = 0; i < LOADING_SELECTORS.length; i++) {
            var els = document.querySelectorAll(LOADING_SELECTORS[i]);
            for (var j = 0; j < els.length; j++) {
                if (isVisible(els[j])) return true;
            }
        }
        return false;
    }

    function contentReady() {
        return Date.now() - lastMutation >= QUIET_MS &&
            imagesLoaded() && canvasesPainted() && !loadingVisible();
    }

    // Resolves once the page looks settled, or when timeoutMs runs out.
    function waitForPageLoad(timeoutMs) {
        return new Promise(function (resolve) {
            var deadline = Date.now() + timeoutMs;
            var check = function () {
                if (contentReady() || Date.now() >= deadline) {
                    resolve();
                } else {
                    setTimeout(check, 100);
                }
            };
            setTimeout(check, Math.min(QUIET_MS, timeoutMs));
        });
    }

    function getPageInfo() {
        var selectors = [
            '#kindleReader_footer', '[class*="progress"]',
            '[class*="location"]', '[class*="page"]'
        ];
        for (var i = 0; i < selectors.length; i++) {
            var el = document.querySelector(selectors[i]);
            if (el && el.textContent.trim()) return el.textContent.trim();
        }
        return null;
    }

    // Returns true when some listener consumed the key press.
    function simulateKey(direction) {
        var key = direction === 'next' ? 'ArrowRight' : 'ArrowLeft';
        var code = direction === 'next' ? 39 : 37;
        var opts = {
            key: key, code: key, keyCode: code, which: code,
            bubbles: true, cancelable: true
        };
        var target = document.activeElement || document.body || document;
        var handled = !target.dispatchEvent(new KeyboardEvent('keydown', opts));
        target.dispatchEvent(new KeyboardEvent('keyup', opts));
        return handled;
    }

    function clickPageTurn(direction) {
        var known = document.getElementById(direction === 'next'
            ? 'kindleReader_pageTurnAreaRight'
            : 'kindleReader_pageTurnAreaLeft');
        if (known) {
            known.click();
            return true;
        }
        var x = direction === 'next' ? window.innerWidth - 30 : 30;
        var y = window.innerHeight / 2;
        var target = document.elementFromPoint(x, y);
        if (!target) return false;
        target.dispatchEvent(new MouseEvent('click', {
            clientX: x, clientY: y, bubbles: true, cancelable: true
        }));
        return true;
    }

    function turn(msg, navigate) {
        var direction = msg.direction || 'next';
        var before = getPageInfo();
        var dispatched = navigate(direction);
        return waitForPageLoad(msg.timeout || %(turn_timeout)d).then(function () {
            var after = getPageInfo();
            var moved = before === null || after !== before;
            return {success: dispatched || moved, pageInfo: after};
        });
    }

    window.__kindleCapture = {
        handle: function (msg) {
            switch (msg.action) {
                case 'ping':
                    return Promise.resolve({ready: true});
                case 'turnPage':
                    return turn(msg, simulateKey);
                case 'turnPageClick':
                    return turn(msg, clickPageTurn);
                case 'getPageInfo':
                    return Promise.resolve({pageInfo: getPageInfo()});
                case 'isContentReady':
                    return Promise.resolve({ready: contentReady()});
            }
            return Promise.resolve(null);
        }
    };
})();
""" % {"quiet_ms": QUIET_PERIOD_MS, "turn_timeout": DEFAULT_TURN_TIMEOUT_MS}


class PageHelper:
    """Request/response channel to the helper script on a surface."""

    def __init__(self, surface, request_timeout=5.0):
        self.surface = surface
        self.request_timeout = request_timeout

    def request(self, action, timeout=None, /, **payload):
        """
        Send one message and return the helper's answer.
        :rtype: dict or None when the helper did not answer
        """
        msg = dict(payload, action=action)
        reply = self.surface.send(msg, timeout or self.request_timeout)
        if reply is None:
            logger.debug("No answer to %s", action)
        return reply

    def ping(self):
        reply = self.request("ping")
        return bool(reply and reply.get("ready"))

    def get_page_info(self):
        reply = self.request("getPageInfo")
        return reply.get("pageInfo") if reply else None

    def ensure_installed(self, sleep, settle=INJECT_SETTLE):
        """Inject the helper unless it already answers, then let it settle."""
        if self.ping():
            return False
        logger.info("Injecting page helper")
        self.surface.inject(HELPER_JS)
        sleep(settle)
        return True


class ReadinessDetector:
    def __init__(self, helper):
        self.helper = helper

    def is_content_ready(self):
        """
        Ask whether the current page looks rendered.
        :rtype: bool, or None when nobody answered
        """
        reply = self.helper.request("isContentReady")
        if reply is None:
            return None
        return bool(reply.get("ready"))

    def wait_until_ready(self, policy, sleep):
        """
        Poll readiness under ``policy``.

        Gives up silently: a helper that does not answer, or a page that
        never confirms, lets the caller proceed anyway.
        :return True if the page confirmed it was ready
        """
        attempt = 0
        while True:
            ready = self.is_content_ready()
            if ready is None:
                return False
            if not policy.should_retry(attempt, ready):
                if not ready:
                    logger.debug("Page did not confirm readiness after %d checks", attempt + 1)
                return ready
            sleep(policy.delay(attempt))
            attempt += 1


class PageNavigator:
    """Turns one page; key presses first, clicks on the page edge as fallback."""

    def __init__(self, helper):
        self.helper = helper

    def turn(self, direction, timeout_ms=DEFAULT_TURN_TIMEOUT_MS):
        # The helper waits up to timeout_ms itself; give the transport room on top.
        transport_timeout = timeout_ms / 1000.0 + 2.0
        reply = self.helper.request("turnPage", transport_timeout,
                                    direction=direction, timeout=timeout_ms)
        if reply and reply.get("success"):
            return True
        logger.debug("Key navigation not handled (%r), clicking instead", reply)
        reply = self.helper.request("turnPageClick", transport_timeout,
                                    direction=direction, timeout=timeout_ms)
        if reply is None:
            logger.warning("Page turn failed: helper did not answer")
            return False
        return bool(reply.get("success"))
