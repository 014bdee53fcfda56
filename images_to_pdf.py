#!/usr/bin/env python3
"""Rebuild a PDF from page images saved with --keep-images."""
import glob
import os

import click

from capture_session import AssemblyError, CapturedFrame
from pdf_builder import ProcessingOptions, build_pdf


@click.command()
@click.argument('input_dir', type=click.Path(exists=True, file_okay=False))
@click.option('--output', '-o', default=None, help='Output PDF path (default: input_dir.pdf)')
@click.option('--pattern', '-p', default='page_*.png', help='Glob pattern for images')
@click.option('--crop-width', default=0, type=click.IntRange(min=0), help='Center-crop width in pixels (0 = off)')
@click.option('--crop-height', default=0, type=click.IntRange(min=0), help='Center-crop height in pixels (0 = off)')
@click.option('--output-width', default=0, type=click.IntRange(min=0), help='Shrink pages to this width (0 = off)')
@click.option('--output-height', default=0, type=click.IntRange(min=0), help='Shrink pages to this height (0 = off)')
@click.option('--grayscale/--no-grayscale', '-g', default=False, help='Convert to grayscale')
def main(input_dir, output, pattern, crop_width, crop_height, output_width, output_height, grayscale):
    """Concatenate images from INPUT_DIR into a single PDF.

    Images are sorted alphabetically by filename.
    """
    image_files = sorted(glob.glob(os.path.join(input_dir, pattern)))

    # Also try jpg if png pattern didn't find anything
    if not image_files and 'png' in pattern:
        image_files = sorted(glob.glob(os.path.join(input_dir, pattern.replace('.png', '.jpg'))))

    if not image_files:
        click.secho(f"No images found matching '{pattern}' in {input_dir}", fg='red')
        raise SystemExit(1)

    click.echo(f"Found {len(image_files)} images")

    if output is None:
        output = os.path.basename(input_dir.rstrip('/')) + '.pdf'

    frames = []
    for index, path in enumerate(image_files):
        with open(path, 'rb') as f:
            frames.append(CapturedFrame(f.read(), index, index + 1))

    options = ProcessingOptions(crop_width, crop_height, output_width, output_height, grayscale)
    click.echo(f"Creating PDF: {output}" + (" (grayscale)" if grayscale else ""))
    try:
        artifact = build_pdf(frames, options)
    except AssemblyError as e:
        raise click.ClickException(str(e))

    with open(output, "wb") as f:
        f.write(artifact.data)

    click.secho(f"✓ Created {output} ({artifact.page_count} pages)", fg='green')


if __name__ == "__main__":
    main()
