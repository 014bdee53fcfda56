"""Frame processing and PDF assembly"""

import io
import random

import pytest
from PIL import Image

from capture_session import AssemblyError, CapturedFrame
from conftest import noise_png
from pdf_builder import (
    FrameProcessor,
    ProcessingJob,
    ProcessingOptions,
    build_pdf,
    center_crop,
    fit_within,
    process_frame,
)


def frames_of(*sizes):
    return [CapturedFrame(noise_png(w, h), i, i + 1) for i, (w, h) in enumerate(sizes)]


def decoded_size(data):
    return Image.open(io.BytesIO(data)).size


class TestCrop:
    def test_center_crop(self):
        image = Image.new("RGB", (200, 100))
        assert center_crop(image, 120, 80).size == (120, 80)

    def test_crop_never_enlarges(self):
        image = Image.new("RGB", (200, 100))
        assert center_crop(image, 300, 50).size == (200, 50)
        assert center_crop(image, 500, 500) is image

    def test_zero_keeps_dimension(self):
        image = Image.new("RGB", (200, 100))
        assert center_crop(image, 0, 60).size == (200, 60)

    def test_crop_takes_the_middle(self):
        image = Image.new("RGB", (30, 10), "white")
        for x in range(10, 20):
            for y in range(10):
                image.putpixel((x, y), (0, 0, 0))
        cropped = center_crop(image, 10, 10)
        assert cropped.getpixel((0, 0)) == (0, 0, 0)
        assert cropped.getpixel((9, 9)) == (0, 0, 0)


class TestResize:
    def test_scales_down_keeping_aspect(self):
        image = Image.new("RGB", (400, 200))
        assert fit_within(image, 200, 200).size == (200, 100)

    def test_never_upscales(self):
        image = Image.new("RGB", (100, 50))
        assert fit_within(image, 400, 400) is image

    def test_single_bound(self):
        image = Image.new("RGB", (400, 200))
        assert fit_within(image, 0, 100).size == (200, 100)


class TestProcessFrame:
    def test_pass_through(self):
        frame = frames_of((60, 80))[0]
        data, size = process_frame(frame, ProcessingOptions())
        assert data == frame.data
        assert size == (60, 80)

    def test_crop_before_resize(self):
        """Crop to 100x100 first, then shrink to 50 wide"""
        frame = frames_of((300, 100))[0]
        data, size = process_frame(frame, ProcessingOptions(100, 100, 50, 0))
        assert size == (50, 50)
        assert decoded_size(data) == (50, 50)

    def test_grayscale(self):
        frame = frames_of((20, 20))[0]
        data, _ = process_frame(frame, ProcessingOptions(grayscale=True))
        assert Image.open(io.BytesIO(data)).mode == "L"

    def test_alpha_flattened(self):
        buf = io.BytesIO()
        Image.new("RGBA", (10, 10), (0, 0, 0, 0)).save(buf, format="PNG")
        data, _ = process_frame(CapturedFrame(buf.getvalue(), 0), ProcessingOptions())
        image = Image.open(io.BytesIO(data))
        assert image.mode == "RGB"
        assert image.getpixel((5, 5)) == (255, 255, 255)

    def test_undecodable(self):
        with pytest.raises(AssemblyError):
            process_frame(CapturedFrame(b"not an image", 0), ProcessingOptions())


class TestBuildPdf:
    def test_one_page_per_frame(self):
        artifact = build_pdf(frames_of((100, 150), (110, 150), (120, 150)), ProcessingOptions())
        assert artifact.data.startswith(b"%PDF")
        assert [(p.width_pt, p.height_pt) for p in artifact.pages] == [(100, 150), (110, 150), (120, 150)]

    def test_orientation_per_page(self):
        artifact = build_pdf(frames_of((200, 100), (100, 200), (100, 100)), ProcessingOptions())
        assert [p.orientation for p in artifact.pages] == ["landscape", "portrait", "portrait"]

    def test_page_size_follows_processing(self):
        artifact = build_pdf(frames_of((400, 300)), ProcessingOptions(output_width=200))
        assert (artifact.pages[0].width_pt, artifact.pages[0].height_pt) == (200, 150)

    def test_empty_input(self):
        with pytest.raises(AssemblyError):
            build_pdf([], ProcessingOptions())

    def test_decode_error_produces_nothing(self):
        frames = frames_of((10, 10)) + [CapturedFrame(b"garbage", 1)]
        with pytest.raises(AssemblyError):
            build_pdf(frames, ProcessingOptions())


class TestBatches:
    def test_job_completes_on_count(self):
        job = ProcessingJob(2, ProcessingOptions())
        job.add([])
        assert not job.is_complete()
        job.add([])
        assert job.is_complete()

    def test_job_completes_on_last_marker(self):
        job = ProcessingJob(5, ProcessingOptions())
        job.add([])
        assert job.is_complete(is_last=True)

    def test_out_of_order_batches_match_single_assembly(self):
        """Batches arriving shuffled rebuild the same page sequence"""
        frames = frames_of(*[(50 + 5 * i, 80) for i in range(7)])
        batches = [frames[0:3], frames[3:6], frames[6:7]]
        shuffled = [batches[2], batches[0], batches[1]]

        processor = FrameProcessor()
        single = processor.assemble(frames, ProcessingOptions())
        processor.begin_batch(len(batches), ProcessingOptions())
        results = [processor.append_batch(batch) for batch in shuffled]

        assert results[:2] == [None, None]
        assert results[2].pages == single.pages

    def test_last_marker_before_count(self):
        """An undercounted transfer still finishes on the last marker"""
        frames = frames_of((20, 20), (30, 20))
        processor = FrameProcessor()
        processor.begin_batch(3, ProcessingOptions())
        assert processor.append_batch(frames[:1]) is None
        artifact = processor.append_batch(frames[1:], is_last=True)
        assert artifact.page_count == 2

    def test_batch_without_init(self):
        with pytest.raises(AssemblyError):
            FrameProcessor().append_batch(frames_of((10, 10)))

    def test_random_order_by_index(self):
        frames = frames_of(*[(20 + i, 20) for i in range(10)])
        job = ProcessingJob(10, ProcessingOptions())
        shuffled = frames[:]
        random.Random(4).shuffle(shuffled)
        for frame in shuffled:
            job.add([frame])
        assert job.ordered_frames() == frames


class TestMessages:
    def setup_method(self):
        self.events = []
        self.processor = FrameProcessor(on_event=self.events.append)

    def test_generate_pdf(self):
        frames = frames_of((40, 30), (30, 40))
        reply = self.processor.handle_message({
            "action": "generatePdf",
            "images": [f.to_data_url() for f in frames],
            "cropWidth": 0, "cropHeight": 0, "outputWidth": 0, "outputHeight": 0,
        })
        assert reply == {"ok": True}
        assert self.events[0]["action"] == "pdfReady"
        artifact = self.processor.take(self.events[0]["artifactRef"])
        assert artifact.page_count == 2

    def test_artifact_taken_once(self):
        self.processor.handle_message({"action": "generatePdf", "images": frames_of((10, 10))})
        ref = self.events[0]["artifactRef"]
        self.processor.take(ref)
        with pytest.raises(AssemblyError):
            self.processor.take(ref)

    def test_batched_messages(self):
        frames = frames_of((10, 10), (20, 10), (30, 10))
        self.processor.handle_message({"action": "generatePdfBatchInit", "totalBatches": 2,
                                       "cropWidth": 5, "cropHeight": 0})
        self.processor.handle_message({"action": "generatePdfBatch", "images": frames[:2], "isLast": False})
        assert self.events == []
        self.processor.handle_message({"action": "generatePdfBatch", "images": frames[2:], "isLast": True})
        artifact = self.processor.take(self.events[0]["artifactRef"])
        assert [p.width_pt for p in artifact.pages] == [5, 5, 5]

    def send_batches(self, batches, batch_size, order):
        self.processor.handle_message({"action": "generatePdfBatchInit", "totalBatches": len(batches),
                                       "batchSize": batch_size})
        for n, batch_index in enumerate(order):
            self.processor.handle_message({
                "action": "generatePdfBatch",
                "batchIndex": batch_index,
                "images": [f.to_data_url() for f in batches[batch_index]],
                "isLast": n == len(order) - 1,
            })
        return self.processor.take(self.events[-1]["artifactRef"])

    def test_data_url_batches_numbered_by_batch_index(self):
        """Encoded frames carry no index; their batch position puts them in place"""
        frames = frames_of((20, 10), (30, 10), (40, 10), (50, 10))
        artifact = self.send_batches([frames[:2], frames[2:]], 2, [0, 1])
        assert [p.width_pt for p in artifact.pages] == [20, 30, 40, 50]

    def test_shuffled_data_url_batches(self):
        frames = frames_of(*[(20 + 5 * i, 10) for i in range(7)])
        batches = [frames[0:3], frames[3:6], frames[6:7]]
        artifact = self.send_batches(batches, 3, [2, 0, 1])
        assert [p.width_pt for p in artifact.pages] == [20 + 5 * i for i in range(7)]

    def test_explicit_first_index(self):
        frames = frames_of((20, 10), (30, 10), (40, 10))
        self.processor.handle_message({"action": "generatePdfBatchInit", "totalBatches": 2})
        self.processor.handle_message({"action": "generatePdfBatch", "firstIndex": 1,
                                       "images": [f.to_data_url() for f in frames[1:]]})
        self.processor.handle_message({"action": "generatePdfBatch", "firstIndex": 0,
                                       "images": [frames[0].to_data_url()]})
        artifact = self.processor.take(self.events[-1]["artifactRef"])
        assert [p.width_pt for p in artifact.pages] == [20, 30, 40]

    def test_empty_request_reports_error(self):
        self.processor.handle_message({"action": "generatePdf", "images": []})
        assert self.events[0]["action"] == "captureError"
        assert self.events[0]["error"]

    def test_unknown_action(self):
        assert "error" in self.processor.handle_message({"action": "explode"})
