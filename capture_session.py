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
"""Session state, configuration and errors shared by the capture pipeline."""
import base64
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum


# Kindle Cloud Reader hosts, e.g. read.amazon.com, read.amazon.co.jp
SUPPORTED_HOST = "read.amazon."


class CaptureError(Exception):
    """Base class for every error the capture pipeline reports."""


class InvalidConfig(CaptureError):
    pass


class AlreadyRunning(CaptureError):
    pass


class NoSurface(CaptureError):
    pass


class UnsupportedSurface(CaptureError):
    pass


class SurfaceUnavailable(CaptureError):
    """The target window went away in the middle of a session."""


class TransportError(CaptureError):
    """A single browser command failed; worth retrying."""


class AssemblyError(CaptureError):
    pass


class PageDirection(Enum):
    LEFT = "left"    # right-bound books (manga): ArrowLeft turns forward
    RIGHT = "right"  # left-bound books (novels): ArrowRight turns forward

    @property
    def key_direction(self):
        """Direction name understood by the page helper."""
        return "prev" if self is PageDirection.LEFT else "next"


class CaptureStatus(Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    NAVIGATING_TO_START = "navigating_to_start"
    ADVANCING = "advancing"
    AWAITING_READY = "awaiting_ready"
    CAPTURING = "capturing"
    VERIFYING = "verifying"
    COMPLETING = "completing"
    STOPPING = "stopping"
    FAILED = "failed"

    @property
    def is_active(self):
        return self not in (CaptureStatus.IDLE, CaptureStatus.FAILED)


@dataclass(frozen=True)
class CaptureConfig:
    start_page: int
    end_page: int
    direction: PageDirection = PageDirection.LEFT
    zoom_factor: float = 2.0
    inter_page_delay_ms: int = 2000
    crop_width: int = 0
    crop_height: int = 0
    output_width: int = 0
    output_height: int = 0
    grayscale: bool = False

    @property
    def total_pages(self):
        return self.end_page - self.start_page + 1

    def validate(self):
        """
        Reject settings the capture loop cannot run with.
        :raises InvalidConfig: with a message meant for the user
        """
        if self.start_page < 1 or self.end_page < 1:
            raise InvalidConfig("Page numbers must be 1 or greater")
        if self.start_page > self.end_page:
            raise InvalidConfig("Start page must not be after the end page")
        if self.inter_page_delay_ms < 500:
            raise InvalidConfig("Delay between pages must be at least 500 ms")
        if self.zoom_factor <= 1.0:
            raise InvalidConfig("Zoom factor must be greater than 1.0")
        for name in ("crop_width", "crop_height", "output_width", "output_height"):
            if getattr(self, name) < 0:
                raise InvalidConfig(f"{name.replace('_', ' ').capitalize()} must not be negative")
        return self

    @classmethod
    def from_message(cls, msg):
        """Build a config from a ``startCapture`` message."""
        try:
            return cls(
                start_page=int(msg["startPage"]),
                end_page=int(msg["endPage"]),
                direction=PageDirection(msg.get("pageDirection") or "left"),
                zoom_factor=float(msg.get("zoomLevel") or 2.0),
                inter_page_delay_ms=int(msg.get("delay") or 2000),
                crop_width=int(msg.get("cropWidth") or 0),
                crop_height=int(msg.get("cropHeight") or 0),
                output_width=int(msg.get("outputWidth") or 0),
                output_height=int(msg.get("outputHeight") or 0),
                grayscale=bool(msg.get("grayscale", False)),
            )
        except KeyError as e:
            raise InvalidConfig(f"Missing setting: {e.args[0]}") from e
        except (TypeError, ValueError) as e:
            raise InvalidConfig(f"Invalid setting: {e}") from e


@dataclass(frozen=True)
class CapturedFrame:
    data: bytes  # encoded PNG
    index: int   # capture order, 0-based
    page: int = 0

    @property
    def size(self):
        return len(self.data)

    @classmethod
    def from_data_url(cls, data_url, index, page=0):
        header, data = data_url.split(',', 1)
        return cls(base64.b64decode(data), index, page)

    def to_data_url(self):
        return "data:image/png;base64," + base64.b64encode(self.data).decode("ascii")


@dataclass
class CaptureSession:
    config: CaptureConfig
    target_surface_id: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: CaptureStatus = CaptureStatus.IDLE
    current_page: int = 0
    frames: list = field(default_factory=list)
    pages_done: int = 0
    started_at: float = field(default_factory=time.time)
    stop_requested: threading.Event = field(default_factory=threading.Event)
    reported: set = field(default_factory=set)

    def __post_init__(self):
        if not self.current_page:
            self.current_page = self.config.start_page

    @property
    def is_active(self):
        return self.status.is_active

    def mark_page_done(self, page):
        """Record that ``page`` went through the whole cycle."""
        self.current_page = page
        self.pages_done += 1
