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
Capture loop: turn page, wait for render, zoom, screenshot, verify, repeat.

Each page goes through ADVANCING -> AWAITING_READY -> CAPTURING ->
VERIFYING. The loop runs on its own thread so ``start`` returns at once;
progress and results are broadcast to listeners as small dict messages.
"""
import logging
import threading
import time

from capture_session import (
    AlreadyRunning,
    CaptureConfig,
    CaptureError,
    CapturedFrame,
    CaptureSession,
    CaptureStatus,
    SUPPORTED_HOST,
    NoSurface,
    SurfaceUnavailable,
    TransportError,
    UnsupportedSurface,
)
from page_helper import PageHelper, PageNavigator, ReadinessDetector
from pdf_builder import BATCH_SIZE, ProcessingOptions
from retry_policy import BLANK_POLICY, CAPTURE_POLICY, READINESS_POLICY, PayloadSizeClassifier

logger = logging.getLogger(__name__)

# Seconds
ZOOM_RENDER_WAIT = 0.4
ZOOM_RESTORE_WAIT = 0.2
TURN_STABILIZE_WAIT = 0.3
FIRST_PAGE_MAX_WAIT = 1.0
HEARTBEAT_INTERVAL = 24.0
ASSEMBLY_TIMEOUT = 300.0


class Heartbeat:
    """Periodically touches the surface while a session is active."""

    def __init__(self, surface, interval=HEARTBEAT_INTERVAL):
        self.surface = surface
        self.interval = interval
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name="capture-heartbeat", daemon=True)

    def start(self):
        self._thread.start()

    def cancel(self):
        self._stopped.set()

    @property
    def running(self):
        return self._thread.is_alive() and not self._stopped.is_set()

    def _run(self):
        while not self._stopped.wait(self.interval):
            self.surface.keep_alive()


class CaptureOrchestrator:
    # surface ids with a session in progress, across all orchestrators
    _busy_surfaces = set()
    _busy_lock = threading.Lock()

    def __init__(self, surface_provider, processor, sink, classifier=None, sleep=time.sleep,
                 heartbeat_interval=HEARTBEAT_INTERVAL, assembly_timeout=ASSEMBLY_TIMEOUT):
        """
        :param surface_provider callable returning the surface to capture from, or None
        :param processor FrameProcessor that builds the PDF
        :param sink DeliverySink that writes it out
        :param classifier callable(frame) -> bool flagging likely-blank captures
        :param sleep wait function, replaceable in tests
        """
        self.surface_provider = surface_provider
        self.processor = processor
        self.processor.on_event = self._on_processor_event
        self.sink = sink
        self.is_blank = classifier or PayloadSizeClassifier()
        self.sleep = sleep
        self.heartbeat_interval = heartbeat_interval
        self.assembly_timeout = assembly_timeout

        self._listeners = []
        self._lock = threading.Lock()
        self._session = None
        self._last_session = None
        self._worker = None
        self._heartbeat = None
        self._pdf_reply = None
        self._pdf_event = threading.Event()

    # ------------------------------------------------------------------
    # Public interface

    def add_listener(self, listener):
        self._listeners.append(listener)

    @property
    def session(self):
        return self._session

    def start(self, config):
        """
        Validate settings and target, then run the capture loop in the background.
        :raises CaptureError: when the session cannot begin; no state is kept then
        :rtype: CaptureSession
        """
        config.validate()
        with self._lock:
            if self._session is not None:
                raise AlreadyRunning("A capture is already running")
            surface = self.surface_provider()
            if surface is None:
                raise NoSurface("No reader window found")
            url = surface.current_url or ""
            if SUPPORTED_HOST not in url:
                raise UnsupportedSurface("Open a book in Kindle Cloud Reader first")
            surface_id = surface.surface_id
            with self._busy_lock:
                if surface_id in self._busy_surfaces:
                    raise AlreadyRunning("A capture is already running in this window")
                self._busy_surfaces.add(surface_id)

            session = CaptureSession(config=config, target_surface_id=surface_id)
            session.status = CaptureStatus.INITIALIZING
            self._session = session
            self._heartbeat = Heartbeat(surface, self.heartbeat_interval)
            self._heartbeat.start()
            self._worker = threading.Thread(target=self._run, args=(session, surface),
                                            name=f"capture-{session.session_id[:8]}", daemon=True)
            self._worker.start()

        logger.info("Started capture of pages %d-%d (session %s)",
                    config.start_page, config.end_page, session.session_id)
        return session

    def stop(self):
        """Ask the loop to stop after the step in flight; returns immediately."""
        session = self._session
        if session is not None and session.is_active:
            logger.info("Stop requested")
            session.stop_requested.set()

    def wait(self, timeout=None):
        """Block until the running session has fully finished. Returns False on timeout."""
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def status(self):
        session = self._session or self._last_session
        if session is None:
            return {"isRunning": False, "currentPage": 0, "startPage": 0, "totalPages": 0}
        return {
            "isRunning": self._session is not None and session.is_active,
            "currentPage": session.current_page,
            "startPage": session.config.start_page,
            "totalPages": session.config.total_pages,
        }

    def handle_message(self, msg):
        """Request/response entry point mirroring the reader UI protocol."""
        action = msg.get("action")
        if action == "startCapture":
            try:
                self.start(CaptureConfig.from_message(msg))
            except CaptureError as e:
                return {"error": str(e)}
            return {"ok": True}
        if action == "stopCapture":
            self.stop()
            return {"ok": True}
        if action == "getStatus":
            return self.status()
        if action in ("pdfReady", "captureError"):
            self._on_processor_event(msg)
            return {"ok": True}
        return {"error": f"Unknown action: {action}"}

    # ------------------------------------------------------------------
    # Loop

    def _run(self, session, surface):
        helper = PageHelper(surface)
        navigator = PageNavigator(helper)
        detector = ReadinessDetector(helper)
        config = session.config
        direction = config.direction.key_direction
        delay_ms = config.inter_page_delay_ms
        failure = None

        try:
            helper.ensure_installed(self.sleep)

            if config.start_page > 1:
                self._transition(session, CaptureStatus.NAVIGATING_TO_START)
                self._broadcast({"action": "progress", "captured": 0, "total": config.total_pages})
                for _ in range(1, config.start_page):
                    if session.stop_requested.is_set():
                        break
                    navigator.turn(direction, delay_ms)
                    self.sleep(TURN_STABILIZE_WAIT)

            for page in range(config.start_page, config.end_page + 1):
                if session.stop_requested.is_set():
                    break

                self._transition(session, CaptureStatus.ADVANCING)
                if page > config.start_page:
                    navigator.turn(direction, delay_ms)
                    self.sleep(TURN_STABILIZE_WAIT)
                else:
                    self.sleep(min(delay_ms / 1000.0, FIRST_PAGE_MAX_WAIT))

                self._transition(session, CaptureStatus.AWAITING_READY)
                detector.wait_until_ready(READINESS_POLICY, self.sleep)

                frame = self._capture_verified(session, surface, detector, page)
                if frame is not None:
                    session.frames.append(frame)
                else:
                    logger.warning("Could not capture page %d, skipping it", page)

                session.mark_page_done(page)
                self._broadcast({"action": "progress", "captured": session.pages_done,
                                 "total": config.total_pages})
        except SurfaceUnavailable as e:
            failure = e
        except Exception as e:
            logger.exception("Capture loop crashed")
            failure = e

        self._finish(session, failure)

    def _capture_verified(self, session, surface, detector, page):
        """Capture, re-capturing blank-looking frames; the final capture is kept as is."""
        attempt = 0
        while True:
            self._transition(session, CaptureStatus.CAPTURING)
            data = self._capture_with_zoom(surface, session.config.zoom_factor)
            if data is None:
                return None
            frame = CapturedFrame(data, len(session.frames), page)

            self._transition(session, CaptureStatus.VERIFYING)
            blank = self.is_blank(frame)
            if not BLANK_POLICY.should_retry(attempt, not blank):
                if blank:
                    logger.info("Page %d still looks blank after %d captures, keeping it", page, attempt + 1)
                return frame
            logger.warning("Capture attempt %d: page %d looks blank (%dKB), retrying...",
                           attempt + 1, page, frame.size // 1024)
            self.sleep(BLANK_POLICY.delay(attempt))
            detector.wait_until_ready(READINESS_POLICY, self.sleep)
            attempt += 1

    def _capture_with_zoom(self, surface, zoom):
        """
        Zoomed screenshot with retries; falls back to an unzoomed one.
        Zoom is reset after every attempt, successful or not.
        :rtype: bytes or None
        """
        for attempt in range(CAPTURE_POLICY.max_attempts):
            try:
                surface.set_zoom(zoom)
                self.sleep(ZOOM_RENDER_WAIT)
                data = surface.capture_visible()
            except TransportError as e:
                logger.warning("Capture attempt %d failed: %s", attempt + 1, e)
                self._restore_zoom(surface)
                if CAPTURE_POLICY.should_retry(attempt, False):
                    self.sleep(CAPTURE_POLICY.delay(attempt))
                continue
            except SurfaceUnavailable:
                self._restore_zoom(surface)
                raise
            self._restore_zoom(surface)
            self.sleep(ZOOM_RESTORE_WAIT)
            return data

        try:
            return surface.capture_visible()
        except TransportError as e:
            logger.error("All capture attempts failed: %s", e)
            return None

    def _restore_zoom(self, surface):
        try:
            surface.reset_zoom()
        except (TransportError, SurfaceUnavailable) as e:
            logger.debug("Zoom reset failed: %s", e)

    # ------------------------------------------------------------------
    # Completion and hand-off

    def _finish(self, session, failure):
        config = session.config
        self._heartbeat.cancel()
        if failure is not None:
            self._transition(session, CaptureStatus.FAILED)
            reason = str(failure) or failure.__class__.__name__
            if session.frames:
                reason = (f"{reason}. Capture ended early; saving the "
                          f"{len(session.frames)} page(s) captured so far")
            self._report(session, {"action": "captureError", "error": reason})
        elif session.stop_requested.is_set() and session.pages_done < config.total_pages:
            self._transition(session, CaptureStatus.STOPPING)
            self._report(session, {"action": "captureStopped"})
        else:
            self._transition(session, CaptureStatus.COMPLETING)
            self._report(session, {"action": "captureComplete"})

        try:
            if session.frames:
                self.sink.store_frames(session.frames)
                self._assemble(session)
        except (CaptureError, OSError) as e:
            logger.error("PDF generation failed: %s", e)
            self._report(session, {"action": "captureError", "error": f"PDF generation failed: {e}"})
        except Exception as e:
            logger.exception("PDF hand-off crashed")
            self._report(session, {"action": "captureError",
                                   "error": f"PDF generation failed: {str(e) or e.__class__.__name__}"})
        finally:
            logger.info("Session %s finished: %d of %d pages captured", session.session_id,
                        len(session.frames), config.total_pages)
            self._reset(session)

    def _assemble(self, session):
        frames = session.frames
        options = ProcessingOptions.from_config(session.config)
        pdf_opts = {
            "cropWidth": options.crop_width,
            "cropHeight": options.crop_height,
            "outputWidth": options.output_width,
            "outputHeight": options.output_height,
            "grayscale": options.grayscale,
        }
        self._pdf_event.clear()
        self._pdf_reply = None

        if len(frames) <= BATCH_SIZE:
            self.processor.handle_message(dict(pdf_opts, action="generatePdf", images=list(frames)))
        else:
            total_batches = -(-len(frames) // BATCH_SIZE)
            self.processor.handle_message(dict(pdf_opts, action="generatePdfBatchInit",
                                               totalBatches=total_batches, totalImages=len(frames),
                                               batchSize=BATCH_SIZE))
            for batch_index, i in enumerate(range(0, len(frames), BATCH_SIZE)):
                self.processor.handle_message({
                    "action": "generatePdfBatch",
                    "batchIndex": batch_index,
                    "firstIndex": i,
                    "images": frames[i:i + BATCH_SIZE],
                    "isLast": i + BATCH_SIZE >= len(frames),
                })
                if self._pdf_event.is_set():
                    break

        if not self._pdf_event.wait(self.assembly_timeout):
            raise CaptureError("the PDF builder did not answer")
        reply = self._pdf_reply
        if reply.get("action") == "captureError":
            self._report(session, reply)
            return
        artifact = self.processor.take(reply["artifactRef"])
        path = self.sink.deliver(artifact, session.started_at)
        self._report(session, {"action": "downloadReady", "total": len(frames), "path": path})

    def _on_processor_event(self, msg):
        self._pdf_reply = msg
        self._pdf_event.set()

    def _reset(self, session):
        with self._lock:
            if session.status is not CaptureStatus.FAILED:
                self._transition(session, CaptureStatus.IDLE)
            session.frames = []
            with self._busy_lock:
                self._busy_surfaces.discard(session.target_surface_id)
            self._last_session = session
            self._session = None

    # ------------------------------------------------------------------
    # Events

    def _transition(self, session, status):
        if session.status is not status:
            logger.debug("Session %s: %s -> %s", session.session_id[:8], session.status.value, status.value)
            session.status = status

    def _report(self, session, msg):
        """Broadcast a terminal event, at most once per kind per session."""
        action = msg["action"]
        if action in session.reported:
            logger.debug("Suppressing repeated %s", action)
            return
        session.reported.add(action)
        self._broadcast(msg)

    def _broadcast(self, msg):
        for listener in list(self._listeners):
            try:
                listener(msg)
            except Exception:
                logger.exception("Listener failed on %s", msg.get("action"))
