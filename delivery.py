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
import logging
import os
from datetime import datetime

logger = logging.getLogger(__name__)


class DeliverySink:
    def __init__(self, out_dir, prefix="kindle-screenshot", frames_dir=None):
        """
        Where finished PDFs (and optionally the raw pages) end up
        :param out_dir folder for the PDF files
        :param prefix file name prefix, followed by the capture timestamp
        :param frames_dir keep every captured page as page_NNNN.png here when set
        """
        self.out_dir = out_dir
        self.prefix = prefix
        self.frames_dir = frames_dir

    def pdf_path(self, captured_at):
        stamp = datetime.fromtimestamp(captured_at).strftime("%Y%m%d-%H%M%S")
        path = os.path.join(self.out_dir, f"{self.prefix}-{stamp}.pdf")
        suffix = 1
        while os.path.exists(path):
            suffix += 1
            path = os.path.join(self.out_dir, f"{self.prefix}-{stamp}-{suffix}.pdf")
        return path

    def deliver(self, artifact, captured_at):
        """
        Write the PDF to disk
        :rtype: string
        :return path of the written file
        """
        os.makedirs(self.out_dir, exist_ok=True)
        path = self.pdf_path(captured_at)
        with open(path, "wb") as f:
            f.write(artifact.data)
        logger.info("Saved %d-page PDF to %s", artifact.page_count, path)
        return path

    def store_frames(self, frames):
        """Save the raw pages; returns how many files were written."""
        if not self.frames_dir:
            return 0
        os.makedirs(self.frames_dir, exist_ok=True)
        for number, frame in enumerate(frames, start=1):
            filename = os.path.join(self.frames_dir, f"page_{number:04d}.png")
            with open(filename, "wb") as f:
                f.write(frame.data)
        return len(frames)
