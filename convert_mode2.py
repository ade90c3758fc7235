from PIL import Image, ImageSequence
import struct
import glob
import os
import numpy as np
# --- Argument parsing and main entry point ---
import argparse
import sys

# Output resolution in logical Mode 2 pixels
WIDTH = 160
HEIGHT = 256

# Source frames are authored at 4x horizontal / 2x vertical oversampling
X_OVERSAMPLE = 4
Y_OVERSAMPLE = 2

THRESHOLD = 128

# Each frame takes 3 bits of a cycle vector, so 10 frames fit in 30 bits
MAX_FRAMES = 10
MAX_COLOURS = 16

# The playback program subtracts 2 centiseconds from each delay
MIN_FRAME_DELAY = 3
MAX_FRAME_DELAY = 255

SIGNATURE = b"Mode2 Animation"
PALETTE_BLOCK_SIZE = 256

# Logical pixel index -> Mode 2 byte with the index bits doubled up
MODE2_COLOUR_TABLE = np.array([
    0x00, 0x03, 0x0C, 0x0F,
    0x30, 0x33, 0x3C, 0x3F,
    0xC0, 0xC3, 0xCC, 0xCF,
    0xF0, 0xF3, 0xFC, 0xFF,
], dtype=np.uint8)
MODE2_COLOUR_TABLE.setflags(write=False)

EVEN_PIXEL_MASK = 0xAA
ODD_PIXEL_MASK = 0x55


class Mode2ConversionError(ValueError):
    """Raised when a source animation cannot be represented in Mode 2."""


def row_length_for(width):
    """Bytes per 8-row character band (640 for a 160 pixel wide screen)."""
    return ((width + 1) // 2) * 8


def pixel_block_size(width=WIDTH, height=HEIGHT):
    return row_length_for(width) * ((height + 7) // 8)


def beeb_colour(threshold, r, g, b):
    """Quantize an RGB triple to a 3-bit BBC Micro colour (bit 0 red, 1 green, 2 blue).

    Channels may be scalars or numpy arrays of the same shape.
    """
    return ((np.greater(r, threshold) * 1)
            | (np.greater(g, threshold) * 2)
            | (np.greater(b, threshold) * 4))


def quantize_frame(frame, width=WIDTH, height=HEIGHT, threshold=THRESHOLD):
    """Quantize one oversampled RGB frame to a (width, height) grid of colour codes.

    Args:
        frame: PIL image or numpy array of shape (rows, cols, channels)
        width, height: output resolution in logical pixels

    Each 4x2 block of source pixels must be a single colour; anything else
    means the frame was not authored for Mode 2 and is rejected.
    """
    if isinstance(frame, Image.Image):
        frame = np.array(frame.convert('RGB'))
    pixels = np.asarray(frame)
    if pixels.ndim != 3 or pixels.shape[2] < 3:
        raise Mode2ConversionError(
            f"The source frame is not an RGB image (array shape {pixels.shape})")
    pixels = pixels[..., :3]

    if pixels.shape[1] != width * X_OVERSAMPLE:
        raise Mode2ConversionError(
            f"The source image is not {width * X_OVERSAMPLE} pixels wide")
    if pixels.shape[0] != height * Y_OVERSAMPLE:
        raise Mode2ConversionError(
            f"The source image is not {height * Y_OVERSAMPLE} pixels high")

    blocks = pixels.reshape(height, Y_OVERSAMPLE, width, X_OVERSAMPLE, 3)
    corner = blocks[:, :1, :, :1, :]
    uniform = np.all(blocks == corner, axis=(1, 3, 4))
    if not uniform.all():
        y, x = np.argwhere(~uniform)[0]
        raise Mode2ConversionError(
            f"Source pixels for output pixel ({x}, {y}) are not a uniform colour")

    rgb = corner[:, 0, :, 0, :]
    codes = beeb_colour(threshold, rgb[..., 0], rgb[..., 1], rgb[..., 2]).astype(np.uint8)
    # Grid is indexed [x, y]
    return codes.T.copy()


def quantize_frames(frames, width=WIDTH, height=HEIGHT, threshold=THRESHOLD):
    """Build the (frame, x, y) grid of colour codes for a whole animation."""
    frame_count = len(frames)
    if frame_count == 0:
        raise Mode2ConversionError("The source image has no frames")
    if frame_count > MAX_FRAMES:
        raise Mode2ConversionError(
            f"The source image has more than {MAX_FRAMES} frames ({frame_count})")

    grid = np.zeros((frame_count, width, height), dtype=np.uint8)
    for frame_index, frame in enumerate(frames):
        grid[frame_index] = quantize_frame(frame, width, height, threshold)
    return grid


def cycle_vectors(grid):
    """Pack each position's colours across all frames into one integer.

    Frame 0 lands in the most significant 3 bits. Both deduplication and the
    final index lookup use this array so they always agree on bit order.
    """
    vectors = np.zeros(grid.shape[1:], dtype=np.int64)
    for frame in grid:
        vectors = (vectors << 3) | frame
    return vectors


def classify_cycles(grid, vectors=None):
    """Split the observed colour cycles into sorted static and dynamic lists.

    Returns (static_cycles, dynamic_cycles) as lists of ints.
    """
    if vectors is None:
        vectors = cycle_vectors(grid)
    is_static = np.all(grid == grid[0], axis=0)

    static_cycles = [int(v) for v in np.unique(vectors[is_static])]
    dynamic_cycles = [int(v) for v in np.unique(vectors[~is_static])]

    colour_count = len(static_cycles) + len(dynamic_cycles)
    if colour_count > MAX_COLOURS:
        raise Mode2ConversionError(
            f"The animation requires more than {MAX_COLOURS} colours ({colour_count})")
    return static_cycles, dynamic_cycles


def assign_colour_numbers(static_cycles, dynamic_cycles):
    """Map each cycle vector to a palette index, static cycles first.

    Static indices are never reprogrammed during playback; the rest cycle.
    """
    colour_numbers = {}
    for cycle in sorted(static_cycles):
        colour_numbers[cycle] = len(colour_numbers)
    for cycle in sorted(dynamic_cycles):
        colour_numbers[cycle] = len(colour_numbers)
    return colour_numbers


def final_indices(vectors, colour_numbers):
    """Look up every position's cycle vector to get its palette index."""
    final = np.zeros(vectors.shape, dtype=np.uint8)
    matched = np.zeros(vectors.shape, dtype=bool)
    for cycle, colour_number in colour_numbers.items():
        hits = vectors == cycle
        final[hits] = colour_number
        matched |= hits
    assert matched.all(), "cycle vector missing from colour table"
    return final


def pack_pixels(final, width=WIDTH, height=HEIGHT):
    """Lay out a (width, height) index grid in Mode 2 screen memory order.

    Pixels are doubled up so each byte holds two logical pixels: even x in
    the 0xAA bits, odd x in the 0x55 bits. Rows are interleaved in bands of 8.
    """
    row_length = row_length_for(width)
    mode2 = np.zeros(pixel_block_size(width, height), dtype=np.uint8)

    for y in range(height):
        row_start = (y // 8) * row_length + (y % 8)
        colours = MODE2_COLOUR_TABLE[final[:, y]]
        row = colours[0::2] & EVEN_PIXEL_MASK
        row[:len(colours[1::2])] |= colours[1::2] & ODD_PIXEL_MASK
        mode2[row_start:row_start + len(row) * 8:8] |= row

    return mode2.tobytes()


def check_frame_delay(delay, frame):
    if delay < MIN_FRAME_DELAY or delay >= MAX_FRAME_DELAY:
        raise Mode2ConversionError(
            f"Frame {frame} delay of {delay} centiseconds is too short (or too long!)")


def pack_palette(static_cycles, dynamic_cycles, delays):
    """Build the 256-byte palette cycling block read by the playback program.

    Layout: signature, NUL, frame count, static count, dynamic count, the
    static colours, then per frame the dynamic colours followed by its delay.
    """
    frame_count = len(delays)
    static_sorted = sorted(static_cycles)
    dynamic_sorted = sorted(dynamic_cycles)

    palette = bytearray(SIGNATURE + b'\x00')
    palette += struct.pack('BBB', frame_count, len(static_sorted), len(dynamic_sorted))
    palette += bytes(cycle & 0x07 for cycle in static_sorted)
    for frame in range(frame_count):
        shift = 3 * (frame_count - frame - 1)
        palette += bytes((cycle >> shift) & 0x07 for cycle in dynamic_sorted)
        check_frame_delay(delays[frame], frame)
        palette.append(delays[frame])

    assert len(palette) <= PALETTE_BLOCK_SIZE
    palette += b'\x00' * (PALETTE_BLOCK_SIZE - len(palette))
    return bytes(palette)


def convert_frames_to_mode2(frames, delays, width=WIDTH, height=HEIGHT):
    """Convert decoded frames into (palette_block, pixel_block).

    Args:
        frames: sequence of oversampled RGB frames (numpy arrays or PIL images)
        delays: per-frame display time in centiseconds
    """
    if len(frames) != len(delays):
        raise Mode2ConversionError(
            f"Got {len(frames)} frames but {len(delays)} frame delays")

    grid = quantize_frames(frames, width, height)
    for frame, delay in enumerate(delays):
        check_frame_delay(delay, frame)

    # Calculate vector of pixel colours across frames;
    # remember each unique vector.
    vectors = cycle_vectors(grid)
    static_cycles, dynamic_cycles = classify_cycles(grid, vectors)

    # Indices are assigned after collection so they can be sorted
    colour_numbers = assign_colour_numbers(static_cycles, dynamic_cycles)
    final = final_indices(vectors, colour_numbers)

    palette = pack_palette(static_cycles, dynamic_cycles, delays)
    mode2 = pack_pixels(final, width, height)
    return palette, mode2


def load_gif_frames(source_file):
    """Decode a GIF into RGB numpy frames and per-frame delays in centiseconds."""
    frames = []
    delays = []
    with Image.open(source_file) as gif:
        for frame in ImageSequence.Iterator(gif):
            frames.append(np.array(frame.convert('RGB')))
            # Pillow reports durations in milliseconds
            delays.append(int(frame.info.get('duration', 0)) // 10)
    return frames, delays


def output_path_for(source_file, output_dir):
    name = os.path.splitext(os.path.basename(source_file))[0]
    return os.path.join(output_dir, name)


def convert_gif_to_mode2(source_file, output_dir):
    """Convert one GIF to a Mode 2 animation file in output_dir.

    Existing outputs are left alone. The output's modification time is copied
    from the source so stale files can be spotted.

    Returns the output path, or None if it already existed.
    """
    new_path = output_path_for(source_file, output_dir)
    if os.path.exists(new_path):
        return None

    stat = os.stat(source_file)
    frames, delays = load_gif_frames(source_file)
    palette, mode2 = convert_frames_to_mode2(frames, delays)

    with open(new_path, 'xb') as f:
        try:
            f.write(palette)
            f.write(mode2)
        except OSError:
            f.close()
            os.remove(new_path)
            raise
    try:
        os.utime(new_path, ns=(stat.st_atime_ns, stat.st_mtime_ns))
    except OSError:
        os.remove(new_path)
        raise
    return new_path


def find_gif_files(source_dir):
    gif_files = set()
    for ext in ['*.gif', '*.GIF']:
        gif_files.update(glob.glob(os.path.join(source_dir, ext)))
    return sorted(gif_files)


def convert_gif_folder_to_mode2(source_dir, output_dir, gif_files=None):
    """Convert every GIF in source_dir, carrying on past files that fail.

    Returns (converted, skipped, failed) lists of source paths.
    """
    if gif_files is None:
        gif_files = find_gif_files(source_dir)
    os.makedirs(output_dir, exist_ok=True)

    converted, skipped, failed = [], [], []
    for source_file in gif_files:
        print(source_file)
        try:
            new_path = convert_gif_to_mode2(source_file, output_dir)
        except (Mode2ConversionError, OSError) as e:
            print(f"convert_mode2: {source_file}: {e}", file=sys.stderr)
            failed.append(source_file)
            continue
        if new_path is None:
            print(f"  Skipping, {output_path_for(source_file, output_dir)} already exists")
            skipped.append(source_file)
        else:
            print(f"  Saved {new_path}")
            converted.append(source_file)
    return converted, skipped, failed


def main(argv=None):
    parser = argparse.ArgumentParser(description="Convert animated GIFs to BBC Micro Mode 2 palette-cycling animations")
    parser.add_argument('files', nargs='*', help='GIF files to convert (default: every GIF in --source)')
    parser.add_argument('--source', type=str, default=os.path.join(os.getcwd(), 'gifs'), help='Input directory of GIF files')
    parser.add_argument('--output', type=str, default=os.path.join(os.getcwd(), 'mode2'), help='Output directory for Mode 2 files')
    args = parser.parse_args(argv)

    print("Mode 2 Animation Converter")
    print("==========================")
    gif_files = args.files or None
    if gif_files is None:
        print(f"Processing directory: {args.source}")

    converted, skipped, failed = convert_gif_folder_to_mode2(args.source, args.output, gif_files)
    print(f"Done. {len(converted)} converted, {len(skipped)} skipped, {len(failed)} failed.")
    if failed:
        sys.exit(1)


# Add main entry point
if __name__ == "__main__":
    main()
