# Image loading and saving for Poisson blending.
# Images live in memory as RGB float32 arrays (H, W, 3) holding gamma-decoded values in [0, 1].

import numpy as np
import cv2
from pathlib import Path
from typing import Union

from poisson_blend import DEFAULT_GAMMA, gamma_decode


# Loads image as RGB float32 in [0, 1], gamma decoded.
# Alpha is dropped and gray images are expanded to 3 channels.
def load_image(path: Union[str, Path], gamma: float = DEFAULT_GAMMA) -> np.ndarray:
    img = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if img is None:
        raise FileNotFoundError(f"Could not read image: {path}")
    img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
    return gamma_decode(img, gamma)


# Saves an interleaved RGBA8 buffer (bytes or uint8 array) of the given size.
def save_image(
    path: Union[str, Path],
    width: int,
    height: int,
    rgba: Union[bytes, bytearray, np.ndarray]
) -> None:
    if isinstance(rgba, (bytes, bytearray)):
        pixels = np.frombuffer(rgba, dtype=np.uint8)
    else:
        pixels = np.asarray(rgba, dtype=np.uint8)

    if pixels.size != width * height * 4:
        raise ValueError(f"Expected {width * height * 4} RGBA bytes for {width}x{height}, got {pixels.size}")
    pixels = pixels.reshape((height, width, 4))

    # OpenCV writes channels in BGRA order
    bgra = cv2.cvtColor(pixels, cv2.COLOR_RGBA2BGRA)
    try:
        written = cv2.imwrite(str(path), bgra)
    except cv2.error as e:
        raise OSError(f"Could not write image: {path}") from e
    if not written:
        raise OSError(f"Could not write image: {path}")
