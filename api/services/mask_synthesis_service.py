"""
Floor Mask Synthesis Service

Builds the two alpha masks used by the render pipeline from nothing but the room
image dimensions:

- API mask: sent to the image-edit service. Alpha 255 = preserve, 0 = editable.
- Score mask: used locally to decide where a candidate is evaluated.
  Alpha 0 = not evaluated, 255 = full evaluation zone.

Both masks share one floor rectangle whose position and size are drawn at random
within configured ranges, with a linear blend band along its inner edges. With
the default inner-edit alpha of 0 the two alphas always sum to exactly 255.
"""
import io
import logging
import random
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from PIL import Image

from core.config import RenderPipelineConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FloorRegion:
    """Floor rectangle in pixel coordinates (right/bottom exclusive)."""

    left: int
    top: int
    right: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top


@dataclass(frozen=True)
class MaskPair:
    """API and score masks for one image size, encoded as RGBA PNG."""

    api_mask: bytes
    score_mask: bytes
    region: FloorRegion
    width: int
    height: int


class MaskSynthesisService:
    """Synthesizes randomized-but-constrained floor masks."""

    def __init__(self, config: Optional[RenderPipelineConfig] = None, rng: Optional[random.Random] = None):
        self.config = config or RenderPipelineConfig()
        # SystemRandom in production; tests inject a seeded Random
        self.rng = rng or random.SystemRandom()

    def pick_floor_region(self, width: int, height: int) -> FloorRegion:
        """Draw the floor rectangle for an image of the given size."""
        cfg = self.config
        top_min, top_max = cfg.floor_top_ratio_range
        width_min, width_max = cfg.floor_width_ratio_range

        top_ratio = max(cfg.min_floor_top_ratio, self.rng.uniform(top_min, top_max))
        width_ratio = self.rng.uniform(width_min, width_max)

        top = int(round(height * top_ratio))
        bottom = height - int(round(height * cfg.floor_bottom_margin_ratio))
        region_width = max(1, min(width, int(round(width * width_ratio))))
        left = (width - region_width) // 2
        right = left + region_width

        if bottom <= top:
            bottom = min(height, top + 1)

        return FloorRegion(left=left, top=top, right=right, bottom=bottom)

    def build_alpha_planes(self, width: int, height: int, region: FloorRegion) -> Tuple[np.ndarray, np.ndarray]:
        """Return (api_alpha, score_alpha) as uint8 arrays of shape (height, width)."""
        cfg = self.config
        blend = max(1, int(cfg.blend_depth_px))

        api_alpha = np.full((height, width), 255, dtype=np.uint8)
        score_alpha = np.zeros((height, width), dtype=np.uint8)

        ys, xs = np.mgrid[region.top : region.bottom, region.left : region.right]
        # Distance in pixels to the nearest rectangle edge, 0 on the boundary row/column
        distance = np.minimum.reduce(
            [xs - region.left, (region.right - 1) - xs, ys - region.top, (region.bottom - 1) - ys]
        )

        in_band = distance <= blend
        score_band = np.rint(255.0 * distance / blend).astype(np.int32)
        score_inside = np.where(in_band, score_band, 255)
        api_inside = np.where(in_band, 255 - score_band, int(cfg.inner_edit_alpha))

        api_alpha[region.top : region.bottom, region.left : region.right] = np.clip(api_inside, 0, 255).astype(np.uint8)
        score_alpha[region.top : region.bottom, region.left : region.right] = np.clip(score_inside, 0, 255).astype(
            np.uint8
        )

        return api_alpha, score_alpha

    def synthesize(self, width: int, height: int) -> MaskPair:
        """Synthesize the API and score masks for a width x height image."""
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid mask dimensions: {width}x{height}")

        region = self.pick_floor_region(width, height)
        api_alpha, score_alpha = self.build_alpha_planes(width, height, region)

        logger.debug(
            f"[Mask] {width}x{height} floor region l={region.left} t={region.top} r={region.right} b={region.bottom}"
        )

        return MaskPair(
            api_mask=_alpha_to_png(api_alpha),
            score_mask=_alpha_to_png(score_alpha),
            region=region,
            width=width,
            height=height,
        )


def _alpha_to_png(alpha: np.ndarray) -> bytes:
    """Encode an alpha plane as an RGBA PNG with zeroed colour channels."""
    height, width = alpha.shape
    rgba = np.zeros((height, width, 4), dtype=np.uint8)
    rgba[:, :, 3] = alpha
    buffer = io.BytesIO()
    Image.fromarray(rgba).save(buffer, format="PNG")
    return buffer.getvalue()


def load_mask_alpha(mask_bytes: bytes, size: Optional[Tuple[int, int]] = None) -> np.ndarray:
    """Decode a mask PNG to its alpha plane, optionally resized to (width, height)."""
    mask = Image.open(io.BytesIO(mask_bytes)).convert("RGBA")
    if size is not None and mask.size != size:
        mask = mask.resize(size, Image.Resampling.NEAREST)
    return np.asarray(mask.getchannel("A"), dtype=np.uint8)
