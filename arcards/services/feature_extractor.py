# arcards/services/feature_extractor.py
"""
Keypoint extraction for tracking targets.

``decode_raster`` turns uploaded bytes into a grayscale working raster;
extractors turn that raster into an ordered, deterministic keypoint list.
Nothing here touches storage or the network.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, List, Tuple, Type

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from ..errors import CompilationError
from .artifact_codec import DESCRIPTOR_LENGTH, Keypoint

log = logging.getLogger(__name__)

# Decompression-bomb guard for user uploads (~8k x 8k).
Image.MAX_IMAGE_PIXELS = 64_000_000


@dataclass(frozen=True)
class Raster:
    width: int            # source image size, as uploaded
    height: int
    pixels: np.ndarray    # float64 grayscale in [0, 1], possibly downscaled
    scale: float = 1.0    # source pixels per working pixel


def decode_raster(data: bytes, max_side: int = 1024) -> Raster:
    if not data:
        raise CompilationError("Image is empty")
    try:
        img = Image.open(BytesIO(data))
        img.load()
        img = ImageOps.exif_transpose(img)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise CompilationError(f"Could not decode image: {e}") from e

    width, height = img.size
    if width < 1 or height < 1:
        raise CompilationError("Image has no pixels")

    gray = img.convert("L")
    scale = 1.0
    longest = max(width, height)
    if max_side and longest > max_side:
        scale = longest / float(max_side)
        size = (max(1, round(width / scale)), max(1, round(height / scale)))
        gray = gray.resize(size, Image.Resampling.BILINEAR)
        scale = width / float(size[0])

    pixels = np.asarray(gray, dtype=np.float64) / 255.0
    return Raster(width=width, height=height, pixels=pixels, scale=scale)


def _f32(value: float) -> float:
    return float(np.float32(value))


# -----------------
# Extractor interface
# -----------------

class FeatureExtractor:
    name = ""

    def __init__(self, max_keypoints: int = 500):
        self.max_keypoints = int(max_keypoints)

    def extract(self, raster: Raster) -> List[Keypoint]:
        raise NotImplementedError


# -----------------
# Harris corners
# -----------------

def _gradients(img: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    gx = np.zeros_like(img)
    gy = np.zeros_like(img)
    gx[:, 1:-1] = (img[:, 2:] - img[:, :-2]) * 0.5
    gy[1:-1, :] = (img[2:, :] - img[:-2, :]) * 0.5
    return gx, gy


def _box_filter(a: np.ndarray, radius: int) -> np.ndarray:
    """Mean over a (2r+1)^2 window, zero padded. Integral image."""
    size = 2 * radius + 1
    padded = np.pad(a, ((radius + 1, radius), (radius + 1, radius)), mode="constant")
    c = padded.cumsum(axis=0).cumsum(axis=1)
    total = c[size:, size:] - c[:-size, size:] - c[size:, :-size] + c[:-size, :-size]
    return total / float(size * size)


def _local_max(a: np.ndarray) -> np.ndarray:
    padded = np.pad(a, 1, mode="constant", constant_values=-np.inf)
    h, w = a.shape
    peak = np.ones(a.shape, dtype=bool)
    for dy in (0, 1, 2):
        for dx in (0, 1, 2):
            if dy == 1 and dx == 1:
                continue
            peak &= a >= padded[dy:dy + h, dx:dx + w]
    return peak


def _downsample(img: np.ndarray) -> np.ndarray:
    h, w = img.shape
    img = img[: h - h % 2, : w - w % 2]
    return 0.25 * (img[0::2, 0::2] + img[1::2, 0::2] + img[0::2, 1::2] + img[1::2, 1::2])


class HarrisExtractor(FeatureExtractor):
    """
    Multi-octave Harris corner detector with a gradient-histogram descriptor.

    Ordering is total (response desc, octave, y, x) so identical pixels always
    give an identical keypoint list.
    """

    name = "harris"

    def __init__(self, max_keypoints: int = 500, octaves: int = 3, k: float = 0.04,
                 window_radius: int = 2, threshold_rel: float = 0.01, min_distance: int = 4,
                 border: int = 3):
        super().__init__(max_keypoints)
        self.octaves = int(octaves)
        self.k = k
        self.window_radius = window_radius
        self.threshold_rel = threshold_rel
        self.min_distance = min_distance
        self.border = border

    # descriptor geometry: 16x16 patch -> 4x4 cells x 8 orientation bins = 128
    PATCH = 16
    CELL = 4
    BINS = 8

    def extract(self, raster: Raster) -> List[Keypoint]:
        candidates = []   # (response, octave, y, x, angle, descriptor)
        img = raster.pixels
        for octave in range(self.octaves):
            if octave:
                img = _downsample(img)
            if min(img.shape) < 2 * (self.border + self.window_radius) + 8:
                break
            candidates.extend(self._detect(img, octave))

        if not candidates:
            return []
        top = max(c[0] for c in candidates)
        if top <= 0:
            return []

        candidates.sort(key=lambda c: (-c[0], c[1], c[2], c[3]))
        keypoints = []
        for response, octave, y, x, angle, descriptor in candidates[: self.max_keypoints]:
            factor = raster.scale * (2 ** octave)
            keypoints.append(Keypoint(
                x=_f32(x * factor),
                y=_f32(y * factor),
                response=min(1.0, _f32(response / top)),
                angle=angle,
                octave=octave,
                descriptor=descriptor,
            ))
        return keypoints

    def _detect(self, img: np.ndarray, octave: int):
        gx, gy = _gradients(img)
        r = self.window_radius
        sxx = _box_filter(gx * gx, r)
        syy = _box_filter(gy * gy, r)
        sxy = _box_filter(gx * gy, r)
        response = (sxx * syy - sxy * sxy) - self.k * (sxx + syy) ** 2

        b = self.border
        valid = np.zeros(response.shape, dtype=bool)
        valid[b:-b, b:-b] = True
        rmax = float(response[valid].max()) if valid.any() else 0.0
        if rmax <= 0:
            return []

        mask = valid & (response > self.threshold_rel * rmax) & _local_max(response)
        ys, xs = np.nonzero(mask)
        if ys.size == 0:
            return []
        scores = response[ys, xs]
        order = np.lexsort((xs, ys, -scores))[: self.max_keypoints * 20]

        magnitude = np.hypot(gx, gy)
        theta = np.mod(np.arctan2(gy, gx), 2 * math.pi)
        bins = np.minimum((theta / (2 * math.pi) * self.BINS).astype(np.int64), self.BINS - 1)
        half = self.PATCH // 2
        magnitude_p = np.pad(magnitude, half, mode="constant")
        bins_p = np.pad(bins, half, mode="constant")
        gx_p = np.pad(gx, half, mode="constant")
        gy_p = np.pad(gy, half, mode="constant")
        cell_index = (np.arange(self.PATCH) // self.CELL)
        cells = (cell_index[:, None] * (self.PATCH // self.CELL) + cell_index[None, :]) * self.BINS

        taken = np.zeros(response.shape, dtype=bool)
        d = self.min_distance
        found = []
        for idx in order:
            y, x = int(ys[idx]), int(xs[idx])
            if taken[y, x]:
                continue
            taken[max(0, y - d):y + d + 1, max(0, x - d):x + d + 1] = True

            # padded coords: patch covers original rows y-half .. y+half-1
            window = (slice(y, y + self.PATCH), slice(x, x + self.PATCH))
            angle = math.degrees(math.atan2(float(gy_p[window].sum()), float(gx_p[window].sum())))
            angle = _f32(angle % 360.0)
            if angle >= 360.0:
                angle = 0.0

            hist = np.bincount(
                (cells + bins_p[window]).ravel(),
                weights=magnitude_p[window].ravel(),
                minlength=DESCRIPTOR_LENGTH,
            )
            peak = hist.max()
            if peak > 0:
                hist = hist / peak
            descriptor = tuple(float(v) for v in hist.astype(np.float32))

            found.append((float(scores[idx]), octave, y, x, angle, descriptor))
            if len(found) >= self.max_keypoints:
                break
        log.debug("octave %s: %s corners", octave, len(found))
        return found


EXTRACTORS: Dict[str, Type[FeatureExtractor]] = {
    HarrisExtractor.name: HarrisExtractor,
}


def get_extractor(name: str, **options) -> FeatureExtractor:
    try:
        cls = EXTRACTORS[(name or "").strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown feature extractor: {name!r}") from None
    return cls(**options)
