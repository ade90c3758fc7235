#!/usr/bin/env python3
"""
Module to parse and render Mode 2 palette-cycling animation files.

Mode 2 animation format:
- 256-byte palette block: "Mode2 Animation\\0", frame count, static and
  dynamic cycle counts, static colours, then per frame the dynamic colours
  and a delay in centiseconds
- 20480-byte Mode 2 screen, two logical pixels per byte, rows interleaved in
  bands of 8

Usage:
    python render_mode2.py input output_dir
"""
import os
import struct
import numpy as np
from PIL import Image
import argparse

from convert_mode2 import (
    EVEN_PIXEL_MASK,
    HEIGHT,
    MAX_COLOURS,
    MAX_FRAMES,
    MODE2_COLOUR_TABLE,
    ODD_PIXEL_MASK,
    PALETTE_BLOCK_SIZE,
    SIGNATURE,
    WIDTH,
    X_OVERSAMPLE,
    Y_OVERSAMPLE,
    pixel_block_size,
    row_length_for,
)

# Masked Mode 2 byte -> logical pixel index
EVEN_PIXEL_DECODE = np.zeros(256, dtype=np.uint8)
EVEN_PIXEL_DECODE[MODE2_COLOUR_TABLE & EVEN_PIXEL_MASK] = np.arange(16)
ODD_PIXEL_DECODE = np.zeros(256, dtype=np.uint8)
ODD_PIXEL_DECODE[MODE2_COLOUR_TABLE & ODD_PIXEL_MASK] = np.arange(16)

# 3-bit colour code -> RGB (bit 0 red, bit 1 green, bit 2 blue)
BEEB_RGB = np.array([
    [255 if code & 1 else 0, 255 if code & 2 else 0, 255 if code & 4 else 0]
    for code in range(8)
], dtype=np.uint8)


def parse_mode2_artifact(data):
    """Parse a Mode 2 animation file's bytes.

    Returns a dict with frame_count, static_codes, dynamic_codes (one list
    per frame), delays and the raw pixels block.
    """
    expected = PALETTE_BLOCK_SIZE + pixel_block_size()
    if len(data) != expected:
        raise ValueError(f"Unexpected file size {len(data)} (expected {expected} bytes)")
    if data[:len(SIGNATURE) + 1] != SIGNATURE + b'\x00':
        raise ValueError("Missing 'Mode2 Animation' signature")

    index = len(SIGNATURE) + 1
    frame_count, static_count, dynamic_count = struct.unpack_from('BBB', data, index)
    index += 3
    if not 1 <= frame_count <= MAX_FRAMES:
        raise ValueError(f"Unexpected frame count {frame_count}")
    if static_count + dynamic_count > MAX_COLOURS:
        raise ValueError(f"Too many colours ({static_count} static, {dynamic_count} dynamic)")

    static_codes = list(data[index:index + static_count])
    index += static_count

    dynamic_codes = []
    delays = []
    for _ in range(frame_count):
        dynamic_codes.append(list(data[index:index + dynamic_count]))
        index += dynamic_count
        delays.append(data[index])
        index += 1

    for codes in [static_codes] + dynamic_codes:
        bad = [code for code in codes if code > 7]
        if bad:
            raise ValueError(f"Invalid colour code {bad[0]} (expected 0-7)")

    return {
        'frame_count': frame_count,
        'static_codes': static_codes,
        'dynamic_codes': dynamic_codes,
        'delays': delays,
        'pixels': bytes(data[PALETTE_BLOCK_SIZE:]),
    }


def unpack_pixels(pixel_block, width=WIDTH, height=HEIGHT):
    """Recover the (width, height) grid of palette indices from Mode 2 screen bytes."""
    data = np.frombuffer(pixel_block, dtype=np.uint8)
    row_length = row_length_for(width)
    final = np.zeros((width, height), dtype=np.uint8)

    for y in range(height):
        row_start = (y // 8) * row_length + (y % 8)
        row = data[row_start:row_start + ((width + 1) // 2) * 8:8]
        final[0::2, y] = EVEN_PIXEL_DECODE[row & EVEN_PIXEL_MASK]
        final[1::2, y] = ODD_PIXEL_DECODE[row[:width // 2] & ODD_PIXEL_MASK]

    return final


def frame_palette(header, frame):
    """Colour code shown by each palette slot during the given frame."""
    return header['static_codes'] + header['dynamic_codes'][frame]


def render_frame(indices, codes, scale=False):
    """Render an index grid with the given slot colours as a PIL image.

    With scale=True each logical pixel is expanded back to the 4x2 block used
    by source animations.
    """
    slot_rgb = BEEB_RGB[np.array(codes, dtype=np.uint8)]
    img = slot_rgb[indices.T]
    if scale:
        img = np.repeat(np.repeat(img, Y_OVERSAMPLE, axis=0), X_OVERSAMPLE, axis=1)
    return Image.fromarray(img, 'RGB')


def render_mode2_frames(input_file, output_dir, scale=False, gif=False, progress_callback=None):
    """
    Parse and render frames from a Mode 2 animation file.

    Args:
        input_file: Path to the Mode 2 file
        output_dir: Directory to save output PNGs
        scale: Expand pixels to the 640x512 source resolution
        gif: Also write animation.gif using the stored delays
        progress_callback: Optional callback(current, total, message)
    """
    os.makedirs(output_dir, exist_ok=True)

    with open(input_file, 'rb') as f:
        header = parse_mode2_artifact(f.read())

    frame_count = header['frame_count']
    print(f"Frames: {frame_count}, static colours: {len(header['static_codes'])}, "
          f"cycling colours: {len(header['dynamic_codes'][0])}")

    indices = unpack_pixels(header['pixels'])
    used = int(indices.max()) + 1
    if used > len(frame_palette(header, 0)):
        raise ValueError(f"Pixel data uses palette index {used - 1} with only "
                         f"{len(frame_palette(header, 0))} colours defined")

    images = []
    for frame in range(frame_count):
        img = render_frame(indices, frame_palette(header, frame), scale=scale)
        output_path = os.path.join(output_dir, f'frame_{frame:04d}.png')
        img.save(output_path)
        images.append(img)
        print(f"Saved {output_path}")

        if progress_callback:
            progress_callback(frame + 1, frame_count, f"Rendered frame {frame + 1}")

    if gif:
        gif_path = os.path.join(output_dir, 'animation.gif')
        images[0].save(
            gif_path,
            save_all=True,
            append_images=images[1:],
            duration=[delay * 10 for delay in header['delays']],
            loop=0,
        )
        print(f"Saved {gif_path}")

    print(f"Done. {frame_count} frames rendered.")
    return frame_count


def main():
    parser = argparse.ArgumentParser(description="Render Mode 2 animation files to PNG frames")
    parser.add_argument('input', help='Input Mode 2 animation file')
    parser.add_argument('output_dir', help='Output directory for PNG frames')
    parser.add_argument('--scale', action='store_true', help='Render at 640x512 source resolution')
    parser.add_argument('--gif', action='store_true', help='Also write an animated GIF')
    args = parser.parse_args()

    render_mode2_frames(args.input, args.output_dir, scale=args.scale, gif=args.gif)


if __name__ == "__main__":
    main()
