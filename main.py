#!/usr/bin/env python3
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
import threading

import click
from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

from delivery import DeliverySink
from orchestrator import CaptureOrchestrator
from pdf_builder import FrameProcessor
from scraper import ReaderSurface, url_checker


class ProgressReporter:
    """Prints capture events and keeps a progress bar up to date."""

    def __init__(self, total):
        self.pbar = tqdm(total=total, unit="pages", desc="Capturing", dynamic_ncols=True)
        self.finished = threading.Event()
        self.error = None
        self.path = None

    def __call__(self, msg):
        action = msg.get("action")
        if action == "progress":
            self.pbar.total = msg["total"]
            self.pbar.n = msg["captured"]
            self.pbar.refresh()
        elif action == "captureComplete":
            self.pbar.write(click.style("Capture complete, building PDF...", fg='cyan'))
        elif action == "captureStopped":
            self.pbar.write(click.style("Capture stopped", fg='yellow'))
        elif action == "captureError":
            self.error = msg.get("error")
            self.pbar.write(click.style(f"Error: {self.error}", fg='red'))
        elif action == "downloadReady":
            self.path = msg.get("path")
            self.pbar.write(click.style(f"✓ Saved {msg['total']} pages to: {self.path}", fg='green'))

    def close(self):
        self.pbar.close()


@click.command(context_settings={"auto_envvar_prefix": "KINDLE_CAPTURE"})
@click.argument('url', required=False, default="https://read.amazon.com/")
@click.option('--driver-path', default=None, help='Specify your chrome driver path')
@click.option('--wait-time', default=15, type=int, help='Wait time for the reader to load in seconds')
@click.option('--out', '-o', default=None, help='Output file folder location')
@click.option('--start-page', default=1, type=click.IntRange(min=1), help='First page to capture')
@click.option('--end-page', required=True, type=click.IntRange(min=1), help='Last page to capture')
@click.option('--direction', type=click.Choice(['left', 'right']), default='left',
              help='left: next page is to the left (manga), right: next page is to the right (novels)')
@click.option('--zoom', default=2.0, type=float, help='Zoom factor applied while taking each screenshot')
@click.option('--delay', default=2000, type=click.IntRange(min=500),
              help='Maximum wait for a page to render, in milliseconds')
@click.option('--crop-width', default=0, type=click.IntRange(min=0), help='Center-crop width in pixels (0 = off)')
@click.option('--crop-height', default=0, type=click.IntRange(min=0), help='Center-crop height in pixels (0 = off)')
@click.option('--output-width', default=0, type=click.IntRange(min=0), help='Shrink pages to this width (0 = off)')
@click.option('--output-height', default=0, type=click.IntRange(min=0), help='Shrink pages to this height (0 = off)')
@click.option('--grayscale', '-g', is_flag=True, help='Convert pages to grayscale before creating PDF')
@click.option('--keep-images/--no-keep-images', default=False, help='Also keep every page as a PNG file')
@click.option('--headless/--no-headless', default=False, help='Run Chrome without a window')
@click.option('--user-data-dir', default=None, type=click.Path(file_okay=False),
              help='Chrome profile folder, keeps you signed in between runs')
@click.option('--pause/--no-pause', default=True, help='Wait for a key press before capturing')
@click.option('--verbose', '-v', is_flag=True, help='Show debug output')
@click.version_option(version='1.0', prog_name='Kindle Cloud Reader Capture')
def main(url, driver_path, wait_time, out, start_page, end_page, direction, zoom, delay,
         crop_width, crop_height, output_width, output_height, grayscale, keep_images,
         headless, user_data_dir, pause, verbose):
    """Capture pages from Kindle Cloud Reader into a PDF.

    URL: The Kindle Cloud Reader address to open (defaults to the library)
    """
    style = "=+" * 20
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")
    # selenium and urllib3 are chatty at DEBUG
    logging.getLogger("selenium").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    click.echo(style)
    click.secho("Kindle Cloud Reader Capture", fg='cyan', bold=True)

    if start_page > end_page:
        raise click.BadParameter('must not be before --start-page', param_hint='--end-page')
    if not url_checker(url):
        raise click.BadParameter('URL must be a Kindle Cloud Reader URL (https://read.amazon...)')

    if out is None:
        out = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dl_files")

    with ReaderSurface(url, driver_path, wait_time, headless=headless, user_data_dir=user_data_dir) as reader:
        reader.load_url()
        if pause:
            click.pause(f"Open the book at page {start_page}, then press any key to start...")

        title = reader.get_title()
        frames_dir = os.path.join(out, title) if keep_images else None
        sink = DeliverySink(out, prefix=title, frames_dir=frames_dir)
        orchestrator = CaptureOrchestrator(reader.active_surface, FrameProcessor(), sink)

        click.echo(style)
        click.echo(f"Title: {click.style(title, fg='green')}")
        click.echo(f"Pages: {start_page}-{end_page}")

        reporter = ProgressReporter(end_page - start_page + 1)
        orchestrator.add_listener(reporter)
        with logging_redirect_tqdm():
            reply = orchestrator.handle_message({
                "action": "startCapture",
                "pageDirection": direction,
                "startPage": start_page,
                "endPage": end_page,
                "zoomLevel": zoom,
                "delay": delay,
                "cropWidth": crop_width,
                "cropHeight": crop_height,
                "outputWidth": output_width,
                "outputHeight": output_height,
                "grayscale": grayscale,
            })
            if reply.get("error"):
                reporter.close()
                raise click.ClickException(reply["error"])

            try:
                orchestrator.wait()
            except KeyboardInterrupt:
                reporter.pbar.write("Stopping after the current page...")
                orchestrator.handle_message({"action": "stopCapture"})
                orchestrator.wait()
            finally:
                reporter.close()

    click.echo(style)
    if reporter.path is None:
        raise click.ClickException(reporter.error or "No pages were captured")
    if frames_dir:
        click.echo(f"Pages kept in: {frames_dir}")


if __name__ == "__main__":
    main()
