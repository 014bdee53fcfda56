"""
Shared fixtures: a scripted in-memory reader surface and PNG page factories.

The fake surface answers the page-helper protocol the way the injected
script does, so the capture loop runs end to end without a browser.
"""

import io
import os

import pytest
from PIL import Image

from capture_session import CaptureConfig, PageDirection
from delivery import DeliverySink
from orchestrator import CaptureOrchestrator
from pdf_builder import FrameProcessor

KINDLE_URL = "https://read.amazon.com/?asin=B00TESTBOOK"


def noise_png(width=120, height=150):
    """A page with incompressible content, well above the blank threshold."""
    image = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def blank_png(width=120, height=150):
    buf = io.BytesIO()
    Image.new("RGB", (width, height), "white").save(buf, format="PNG")
    return buf.getvalue()


def page_size(page):
    """Every book page gets its own width so order shows up in the PDF layout."""
    return (100 + 10 * page, 150)


class FakeSurface:
    def __init__(self, url=KINDLE_URL, surface_id="fake-window"):
        self.current_url = url
        self.surface_id = surface_id
        self.page = 1
        self.zoom = None
        self.installed = False
        self.injected = 0
        self.ready = True
        self.key_turns_work = True
        self.messages = []
        self.captures = []
        self.zoom_resets = 0
        self.keepalives = 0
        self.on_capture = None

    def send(self, message, timeout):
        self.messages.append(message)
        if not self.installed:
            return None
        action = message["action"]
        if action == "ping":
            return {"ready": True}
        if action == "turnPage":
            if not self.key_turns_work:
                return {"success": False, "pageInfo": f"Page {self.page}"}
            self._turn(message["direction"])
            return {"success": True, "pageInfo": f"Page {self.page}"}
        if action == "turnPageClick":
            self._turn(message["direction"])
            return {"success": True, "pageInfo": f"Page {self.page}"}
        if action == "getPageInfo":
            return {"pageInfo": f"Page {self.page}"}
        if action == "isContentReady":
            return {"ready": self.ready}
        return None

    def _turn(self, direction):
        self.page += 1

    def inject(self, script):
        self.injected += 1
        self.installed = True

    def set_zoom(self, factor):
        self.zoom = factor

    def reset_zoom(self):
        self.zoom = None
        self.zoom_resets += 1

    def capture_visible(self):
        self.captures.append((self.page, self.zoom))
        if self.on_capture is not None:
            return self.on_capture(self)
        return noise_png(*page_size(self.page))

    def keep_alive(self):
        self.keepalives += 1

    def actions(self, name):
        return [m for m in self.messages if m["action"] == name]

    def captures_of(self, page):
        return [c for c in self.captures if c[0] == page]


class EventLog:
    def __init__(self):
        self.events = []

    def __call__(self, msg):
        self.events.append(msg)

    def actions(self):
        return [e["action"] for e in self.events]

    def terminal(self):
        return [a for a in self.actions() if a != "progress"]

    def last(self, action):
        matches = [e for e in self.events if e["action"] == action]
        return matches[-1] if matches else None


def no_sleep(seconds):
    pass


@pytest.fixture
def surface():
    return FakeSurface()


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def sink(tmp_path):
    return DeliverySink(str(tmp_path / "out"))


@pytest.fixture
def orchestrator(surface, sink, events):
    orch = CaptureOrchestrator(lambda: surface, FrameProcessor(), sink,
                               sleep=no_sleep, heartbeat_interval=60)
    orch.add_listener(events)
    yield orch
    orch.stop()
    orch.wait(5)


@pytest.fixture
def config():
    return CaptureConfig(start_page=1, end_page=3, direction=PageDirection.RIGHT,
                         zoom_factor=2.0, inter_page_delay_ms=1000)
