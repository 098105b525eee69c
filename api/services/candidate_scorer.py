"""
Candidate Quality Scorer

Compares each image returned by the edit service against the prepared room and
the score mask, and turns the comparison into one number (lower is better):

    score = outsideMeanDiff * 2.2 + lowInsidePenalty - insideMeanDiff * 0.2 + geometryPenalty

- Change outside the floor zone is penalized hardest: the room itself must not move.
- A suspiciously small change inside the zone is penalized lightly.
- A rug whose changed area touches the frame or fills nearly the whole image is
  penalized heavily.

A candidate that shows no meaningful change (no changed pixels, a degenerate
bounding box or almost no edge contrast) scores +inf and is never preferred over
a finite score.
"""
import dataclasses
import io
import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from core.config import RenderPipelineConfig
from services.mask_synthesis_service import load_mask_alpha

logger = logging.getLogger(__name__)

OUTSIDE_DIFF_WEIGHT = 2.2
INSIDE_DIFF_WEIGHT = 0.2
LOW_INSIDE_DIFF = 8.0
LOW_INSIDE_PENALTY = 18.0
FRAME_TOUCH_PENALTY = 180.0
OVERSIZE_PENALTY_SCALE = 900.0


@dataclass(frozen=True)
class BoundingBox:
    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x

    @property
    def height(self) -> int:
        return self.max_y - self.min_y


@dataclass(frozen=True)
class CandidateMetrics:
    score: float
    rug_area_ratio: float
    bounding_box: Optional[BoundingBox]
    inside_mean_diff: float
    outside_mean_diff: float
    edge_contrast: float

    @property
    def rejected(self) -> bool:
        return math.isinf(self.score)

    def to_dict(self) -> dict:
        box = self.bounding_box
        return {
            "score": None if self.rejected else round(self.score, 3),
            "rejected": self.rejected,
            "rug_area_ratio": round(self.rug_area_ratio, 4),
            "bounding_box": None if box is None else dataclasses.asdict(box),
            "inside_mean_diff": round(self.inside_mean_diff, 3),
            "outside_mean_diff": round(self.outside_mean_diff, 3),
            "edge_contrast": round(self.edge_contrast, 3),
        }


@dataclass
class CandidateImage:
    """One image returned by the edit service."""

    data: bytes
    mime_type: str = "image/png"
    metrics: Optional[CandidateMetrics] = None


def load_rgb(image_bytes: bytes, size: Optional[Tuple[int, int]] = None) -> np.ndarray:
    """Decode to an RGB float32 array, optionally resized to (width, height)."""
    with Image.open(io.BytesIO(image_bytes)) as image:
        rgb = image.convert("RGB")
        if size is not None and rgb.size != size:
            rgb = rgb.resize(size, Image.Resampling.BILINEAR)
        return np.array(rgb, dtype=np.float32)


def pixel_diff(original: np.ndarray, candidate: np.ndarray) -> np.ndarray:
    """Per-pixel mean absolute difference across colour channels."""
    return np.abs(original - candidate).mean(axis=2)


def luminance(rgb: np.ndarray) -> np.ndarray:
    return rgb[..., 0] * 0.299 + rgb[..., 1] * 0.587 + rgb[..., 2] * 0.114


def edge_contrast_map(rgb: np.ndarray) -> np.ndarray:
    """Local contrast: luminance step to the right and downward neighbours."""
    lum = luminance(rgb)
    dx = np.zeros_like(lum)
    dy = np.zeros_like(lum)
    dx[:, :-1] = np.abs(lum[:, 1:] - lum[:, :-1])
    dy[:-1, :] = np.abs(lum[1:, :] - lum[:-1, :])
    return dx + dy


class CandidateScorer:
    """Scores candidates and picks the best one."""

    def __init__(self, config: Optional[RenderPipelineConfig] = None):
        self.config = config or RenderPipelineConfig()

    def _rejected(self, inside: float, outside: float, contrast: float) -> CandidateMetrics:
        return CandidateMetrics(
            score=math.inf,
            rug_area_ratio=1.0,
            bounding_box=None,
            inside_mean_diff=inside,
            outside_mean_diff=outside,
            edge_contrast=contrast,
        )

    def score(self, candidate_bytes: bytes, original_room_bytes: bytes, score_mask_bytes: bytes) -> CandidateMetrics:
        cfg = self.config
        original = load_rgb(original_room_bytes)
        height, width = original.shape[:2]
        candidate = load_rgb(candidate_bytes, size=(width, height))
        mask_alpha = load_mask_alpha(score_mask_bytes, size=(width, height))

        stride = max(1, int(cfg.sample_stride))
        diff = pixel_diff(original, candidate)[::stride, ::stride]
        zone = mask_alpha[::stride, ::stride] > cfg.score_mask_threshold
        contrast = edge_contrast_map(candidate)[::stride, ::stride]

        inside_count = int(zone.sum())
        outside_count = int(zone.size - inside_count)
        inside_mean = float(diff[zone].mean()) if inside_count else 0.0
        outside_mean = float(diff[~zone].mean()) if outside_count else 0.0

        changed = zone & (diff > cfg.change_threshold)
        changed_count = int(changed.sum())
        edge_contrast = float(contrast[changed].mean()) if changed_count else 0.0

        if changed_count == 0 or edge_contrast < cfg.edge_contrast_threshold:
            logger.info(
                f"[Score] Rejected: changed={changed_count}, edge_contrast={edge_contrast:.2f}, "
                f"inside={inside_mean:.2f}, outside={outside_mean:.2f}"
            )
            return self._rejected(inside_mean, outside_mean, edge_contrast)

        rows, cols = np.nonzero(changed)
        box = BoundingBox(
            min_x=int(cols.min()) * stride,
            min_y=int(rows.min()) * stride,
            max_x=int(cols.max()) * stride,
            max_y=int(rows.max()) * stride,
        )
        if box.width <= 0 or box.height <= 0:
            logger.info(f"[Score] Rejected: degenerate bounding box {box}")
            return self._rejected(inside_mean, outside_mean, edge_contrast)

        width_ratio = box.width / width
        height_ratio = box.height / height
        margin_x = width * cfg.frame_margin_ratio
        margin_y = height * cfg.frame_margin_ratio
        touches_frame = (
            box.min_x <= margin_x
            or box.min_y <= margin_y
            or box.max_x >= width - 1 - margin_x
            or box.max_y >= height - 1 - margin_y
        )

        geometry_penalty = 0.0
        if touches_frame:
            geometry_penalty += FRAME_TOUCH_PENALTY
        if width_ratio > cfg.max_width_ratio:
            geometry_penalty += (width_ratio - cfg.max_width_ratio) * OVERSIZE_PENALTY_SCALE
        if height_ratio > cfg.max_height_ratio:
            geometry_penalty += (height_ratio - cfg.max_height_ratio) * OVERSIZE_PENALTY_SCALE

        changed_mask_ratio = changed_count / inside_count
        bbox_area_ratio = (box.width * box.height) / float(width * height)
        rug_area_ratio = max(bbox_area_ratio, changed_mask_ratio)

        low_inside_penalty = LOW_INSIDE_PENALTY if inside_mean < LOW_INSIDE_DIFF else 0.0

        score = (
            outside_mean * OUTSIDE_DIFF_WEIGHT + low_inside_penalty - inside_mean * INSIDE_DIFF_WEIGHT + geometry_penalty
        )

        logger.info(
            f"[Score] score={score:.2f} outside={outside_mean:.2f} inside={inside_mean:.2f} "
            f"area={rug_area_ratio:.3f} touches_frame={touches_frame} geometry_penalty={geometry_penalty:.1f}"
        )

        return CandidateMetrics(
            score=score,
            rug_area_ratio=rug_area_ratio,
            bounding_box=box,
            inside_mean_diff=inside_mean,
            outside_mean_diff=outside_mean,
            edge_contrast=edge_contrast,
        )

    def select(
        self, candidates: Sequence[CandidateImage], original_room_bytes: bytes, score_mask_bytes: bytes
    ) -> CandidateImage:
        """
        Attach metrics to every candidate and return the lowest-scoring one.

        With a single candidate the metrics are still computed (refinement gating
        reads them) but nothing is compared. Ties keep the earliest candidate.
        """
        if not candidates:
            raise ValueError("No candidates to select from")

        best: Optional[CandidateImage] = None
        best_index = 0
        for index, candidate in enumerate(candidates):
            candidate.metrics = self.score(candidate.data, original_room_bytes, score_mask_bytes)
            if best is None or candidate.metrics.score < best.metrics.score:
                best = candidate
                best_index = index
            logger.debug(f"[Score] Candidate {index}: {candidate.metrics.score}")

        if len(candidates) > 1:
            logger.info(f"[Score] Selected candidate {best_index} of {len(candidates)}")
        return best

