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
"""Turn captured frames into a single PDF, one page per frame."""
import io
import logging
import time
import uuid
from dataclasses import dataclass, field

import img2pdf
from PIL import Image, UnidentifiedImageError

from capture_session import AssemblyError, CapturedFrame

logger = logging.getLogger(__name__)

# Pixels map to PDF points 1:1, i.e. pages are laid out at 72 dpi.
REFERENCE_DPI = 72

# Frames per batch message; 20 full-screen PNGs stay well under a transport limit.
BATCH_SIZE = 20


@dataclass(frozen=True)
class ProcessingOptions:
    crop_width: int = 0
    crop_height: int = 0
    output_width: int = 0
    output_height: int = 0
    grayscale: bool = False

    @property
    def crop_enabled(self):
        return bool(self.crop_width or self.crop_height)

    @property
    def resize_enabled(self):
        return bool(self.output_width or self.output_height)

    @classmethod
    def from_message(cls, msg):
        return cls(
            crop_width=int(msg.get("cropWidth") or 0),
            crop_height=int(msg.get("cropHeight") or 0),
            output_width=int(msg.get("outputWidth") or 0),
            output_height=int(msg.get("outputHeight") or 0),
            grayscale=bool(msg.get("grayscale", False)),
        )

    @classmethod
    def from_config(cls, config):
        return cls(config.crop_width, config.crop_height,
                   config.output_width, config.output_height, config.grayscale)


@dataclass(frozen=True)
class PageLayout:
    width_pt: float
    height_pt: float

    @property
    def orientation(self):
        return "landscape" if self.width_pt > self.height_pt else "portrait"


@dataclass
class Artifact:
    data: bytes
    pages: list
    ref: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    @property
    def page_count(self):
        return len(self.pages)


def center_crop(image, width, height):
    """
    Cut the middle ``width`` x ``height`` out of ``image``.
    A zero dimension keeps the source size; nothing is ever enlarged.
    """
    src_w, src_h = image.size
    crop_w = width if width and width < src_w else src_w
    crop_h = height if height and height < src_h else src_h
    if (crop_w, crop_h) == (src_w, src_h):
        return image
    left = (src_w - crop_w) // 2
    top = (src_h - crop_h) // 2
    return image.crop((left, top, left + crop_w, top + crop_h))


def fit_within(image, width, height):
    """Scale ``image`` down to fit ``width`` x ``height``, keeping its aspect ratio."""
    src_w, src_h = image.size
    scale = min(width / src_w if width else 1.0, height / src_h if height else 1.0)
    if scale >= 1.0:
        return image
    size = (max(1, round(src_w * scale)), max(1, round(src_h * scale)))
    return image.resize(size, Image.LANCZOS)


def _flatten(image):
    # img2pdf refuses alpha channels; screenshots are opaque anyway.
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    if image.mode not in ("RGB", "L", "1"):
        return image.convert("RGB")
    return image


def process_frame(frame, options):
    """
    Apply crop, resize and grayscale to one frame.
    :rtype: tuple of (PNG bytes, (width, height))
    """
    try:
        image = Image.open(io.BytesIO(frame.data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise AssemblyError(f"Could not decode page {frame.index + 1}: {e}") from e

    changed = image.format != "PNG"
    if options.crop_enabled:
        cropped = center_crop(image, options.crop_width, options.crop_height)
        changed = changed or cropped is not image
        image = cropped
    if options.resize_enabled:
        resized = fit_within(image, options.output_width, options.output_height)
        changed = changed or resized is not image
        image = resized
    if options.grayscale:
        image = image.convert("L")
        changed = True
    flat = _flatten(image)
    changed = changed or flat is not image

    if not changed:
        return frame.data, image.size
    buf = io.BytesIO()
    flat.save(buf, format="PNG")
    return buf.getvalue(), flat.size


def build_pdf(frames, options):
    """
    Build the PDF for ``frames`` in capture order.
    :raises AssemblyError: on empty input or an undecodable frame
    :rtype: Artifact
    """
    if not frames:
        raise AssemblyError("No captured pages to put in the PDF")

    pages = []
    images = []
    for frame in frames:
        data, (width, height) = process_frame(frame, options)
        images.append(data)
        pages.append(PageLayout(width * 72.0 / REFERENCE_DPI, height * 72.0 / REFERENCE_DPI))

    layout = img2pdf.get_fixed_dpi_layout_fun((REFERENCE_DPI, REFERENCE_DPI))
    try:
        pdf = img2pdf.convert(images, layout_fun=layout)
    except Exception as e:
        raise AssemblyError(f"PDF generation failed: {e}") from e
    logger.info("Built PDF with %d pages (%d bytes)", len(pages), len(pdf))
    return Artifact(pdf, pages)


class ProcessingJob:
    """Frames arriving in batches, put back in capture order at the end."""

    def __init__(self, total_batches, options, batch_size=BATCH_SIZE):
        self.total_batches = total_batches
        self.batch_size = batch_size
        self.received_batches = 0
        self.frames = []
        self.options = options

    def add(self, frames):
        self.frames.extend(frames)
        self.received_batches += 1

    def is_complete(self, is_last=False):
        return is_last or self.received_batches >= self.total_batches

    def ordered_frames(self):
        return sorted(self.frames, key=lambda f: f.index)


def _coerce_frames(items, first_index=0):
    frames = []
    for offset, item in enumerate(items or []):
        if isinstance(item, CapturedFrame):
            frames.append(item)
        elif isinstance(item, str):
            frames.append(CapturedFrame.from_data_url(item, first_index + offset))
        else:
            frames.append(CapturedFrame(bytes(item), first_index + offset))
    return frames


class FrameProcessor:
    """
    Receives frames, builds the PDF and keeps it until it is picked up.

    Results are announced through ``on_event`` as ``pdfReady`` or
    ``captureError`` messages.
    """

    def __init__(self, on_event=None):
        self.on_event = on_event
        self._job = None
        self._artifacts = {}

    def assemble(self, frames, options):
        artifact = build_pdf(list(frames), options)
        self._artifacts[artifact.ref] = artifact
        return artifact

    def begin_batch(self, total_batches, options, batch_size=BATCH_SIZE):
        if self._job is not None:
            logger.warning("Discarding unfinished batch transfer (%d/%d batches)",
                           self._job.received_batches, self._job.total_batches)
        self._job = ProcessingJob(total_batches, options, batch_size)

    def append_batch(self, frames, is_last=False):
        """
        Add one batch. Returns the artifact once the transfer is complete.
        """
        job = self._job
        if job is None:
            raise AssemblyError("Received a page batch without a transfer in progress")
        job.add(frames)
        if not job.is_complete(is_last):
            return None
        self._job = None
        return self.assemble(job.ordered_frames(), job.options)

    def take(self, ref):
        """Hand the finished artifact over; each reference works once."""
        try:
            return self._artifacts.pop(ref)
        except KeyError:
            raise AssemblyError(f"Unknown or already collected PDF: {ref}") from None

    def handle_message(self, msg):
        action = msg.get("action")
        try:
            if action == "generatePdf":
                self._announce(self.assemble(_coerce_frames(msg.get("images")),
                                             ProcessingOptions.from_message(msg)))
            elif action == "generatePdfBatchInit":
                self.begin_batch(int(msg["totalBatches"]), ProcessingOptions.from_message(msg),
                                 int(msg.get("batchSize") or BATCH_SIZE))
            elif action == "generatePdfBatch":
                artifact = self.append_batch(self._batch_frames(msg), bool(msg.get("isLast")))
                if artifact is not None:
                    self._announce(artifact)
            else:
                return {"error": f"Unknown action: {action}"}
        except AssemblyError as e:
            self._job = None
            logger.error("PDF build error: %s", e)
            self._emit({"action": "captureError", "error": str(e)})
        return {"ok": True}

    def _batch_frames(self, msg):
        """Frames of one batch, numbered from the batch's place in the transfer."""
        first = msg.get("firstIndex")
        if first is None and self._job is not None:
            batch_index = msg.get("batchIndex", self._job.received_batches)
            first = int(batch_index) * self._job.batch_size
        return _coerce_frames(msg.get("images"), int(first or 0))

    def _announce(self, artifact):
        self._emit({"action": "pdfReady", "artifactRef": artifact.ref})

    def _emit(self, msg):
        if self.on_event is not None:
            self.on_event(msg)
