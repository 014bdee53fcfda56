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
"""Bounded retry decisions and the blank-frame heuristic."""
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often to try something and how long to wait in between.
    :param max_attempts total number of attempts, including the first
    :param interval base wait in seconds
    :param escalation extra fraction of ``interval`` added per attempt (0 keeps the wait fixed)
    """
    max_attempts: int
    interval: float
    escalation: float = 0.0

    def should_retry(self, attempt, observed_ok):
        """
        Decide whether another attempt follows ``attempt`` (0-based).
        :rtype: bool
        """
        if observed_ok:
            return False
        return attempt + 1 < self.max_attempts

    def delay(self, attempt):
        """Seconds to wait after a failed ``attempt`` before the next one."""
        return self.interval * (1 + self.escalation * attempt)


# Readiness is polled a few times, then the loop proceeds regardless.
READINESS_POLICY = RetryPolicy(max_attempts=5, interval=0.6)
# Three blank-suspect retries waiting 1.5s, 3s, 4.5s; the fourth capture is kept as is.
BLANK_POLICY = RetryPolicy(max_attempts=4, interval=1.5, escalation=1.0)
CAPTURE_POLICY = RetryPolicy(max_attempts=3, interval=0.3)

# A white 1920x1080 PNG compresses to roughly 5-15KB; rendered pages are 100KB+.
BLANK_THRESHOLD_BYTES = 30 * 1024


class PayloadSizeClassifier:
    """
    Treat a frame as blank when its encoded payload is small.

    PNG size is only a proxy for visual content: a sparse text page can
    compress below the threshold. Any callable taking a frame and
    returning a bool can be used in its place.
    """

    def __init__(self, threshold_bytes=BLANK_THRESHOLD_BYTES):
        self.threshold_bytes = threshold_bytes

    def __call__(self, frame):
        return frame.size < self.threshold_bytes

    def __repr__(self):
        return f"PayloadSizeClassifier(threshold_bytes={self.threshold_bytes})"
