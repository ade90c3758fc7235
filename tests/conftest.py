import numpy as np
import pytest
from PIL import Image

# 3-bit colour code -> fully saturated RGB
PRIMARIES = np.array([
    [0, 0, 0], [255, 0, 0], [0, 255, 0], [255, 255, 0],
    [0, 0, 255], [255, 0, 255], [0, 255, 255], [255, 255, 255],
], dtype=np.uint8)


def oversample(codes):
    """Turn a (height, width) grid of colour codes into a 4x2 oversampled RGB frame."""
    rgb = PRIMARIES[np.asarray(codes, dtype=np.uint8)]
    return np.repeat(np.repeat(rgb, 2, axis=0), 4, axis=1)


def write_gif(path, code_grids, durations):
    """Write an animated GIF whose frames are exact Mode 2 primaries."""
    images = []
    for codes in code_grids:
        indices = np.repeat(np.repeat(np.asarray(codes, dtype=np.uint8), 2, axis=0), 4, axis=1)
        img = Image.fromarray(indices, 'P')
        img.putpalette(PRIMARIES.flatten().tolist())
        images.append(img)
    images[0].save(
        path,
        save_all=True,
        append_images=images[1:],
        duration=durations,
        loop=0,
    )
    return path


@pytest.fixture
def moving_bar_codes():
    """Two full-size frames: a red bar on black that moves and turns blue."""
    first = np.zeros((256, 160), dtype=np.uint8)
    second = np.zeros((256, 160), dtype=np.uint8)
    first[100:120, 10:50] = 1
    second[100:120, 30:70] = 4
    first[0:8, :] = 7
    second[0:8, :] = 7
    return [first, second]
