"""
Refinement Stage

Optional post-processing of the selected candidate, in this order:

1. Shadow pass - a second edit-service call that only adds a soft contact
   shadow. Runs in normal mode when the rug leaves visible floor around it.
   Any failure is logged and the pre-shadow image is kept.
2. Edge polish - a local pass that darkens and slightly blurs the one-pixel
   seam between changed and unchanged pixels, leaving every other pixel alone.
"""
import dataclasses
import io
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
from PIL import Image, ImageFilter

from core.config import RenderPipelineConfig
from services.candidate_scorer import CandidateImage, load_rgb, pixel_diff
from services.mask_synthesis_service import load_mask_alpha
from services.preparation_cache import PreparedCarpetImage, PreparedRoomImage
from services.render_orchestrator import SHADOW_PROMPT, RenderOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class RefinementResult:
    data: bytes
    mime_type: str
    applied: List[str] = field(default_factory=list)


def _encode_png(rgb: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(np.clip(np.rint(rgb), 0, 255).astype(np.uint8)).save(buffer, format="PNG")
    return buffer.getvalue()


def seam_pixels(changed: np.ndarray) -> np.ndarray:
    """Changed pixels with at least one unchanged 4-connected neighbour."""
    padded = np.pad(changed, 1, mode="edge")
    up = padded[:-2, 1:-1]
    down = padded[2:, 1:-1]
    left = padded[1:-1, :-2]
    right = padded[1:-1, 2:]
    all_neighbours_changed = up & down & left & right
    return changed & ~all_neighbours_changed


class RefinementService:
    """Runs the shadow pass and edge polish on a selected candidate."""

    def __init__(self, orchestrator: RenderOrchestrator, config: Optional[RenderPipelineConfig] = None):
        self.orchestrator = orchestrator
        self.config = config or orchestrator.config

    def should_run_shadow_pass(self, candidate: CandidateImage, mode: str = "normal") -> bool:
        # Preview renders are single-call by contract
        if not self.config.enable_shadow_pass or mode == "preview":
            return False
        metrics = candidate.metrics
        if metrics is None or metrics.rejected:
            return False
        return metrics.rug_area_ratio <= self.config.shadow_max_rug_area_ratio

    async def shadow_pass(
        self, candidate: CandidateImage, room: PreparedRoomImage, carpet: PreparedCarpetImage, mode: str
    ) -> Optional[CandidateImage]:
        """Ask the edit service for a contact shadow. Returns None on any failure."""
        try:
            # Re-encode at the prepared room size so the API mask still lines up
            working = load_rgb(candidate.data, size=(room.width, room.height))
            shadow_room = dataclasses.replace(room, normalized_bytes=_encode_png(working), mime_type="image/png")
            mask = room.api_mask_bytes if self.config.use_api_mask else None
            results = await self.orchestrator.render(
                shadow_room, carpet, mode, variant_count=1, mask_bytes=mask, instruction=SHADOW_PROMPT
            )
            logger.info("[Refine] Shadow pass applied")
            return results[0]
        except Exception as e:
            logger.warning(f"[Refine] Shadow pass failed, keeping unshadowed image: {e}")
            return None

    def edge_polish(self, image_bytes: bytes, room: PreparedRoomImage) -> bytes:
        """Soften the seam between changed and unchanged floor pixels."""
        cfg = self.config
        original = load_rgb(room.normalized_bytes)
        height, width = original.shape[:2]
        working = load_rgb(image_bytes, size=(width, height))
        zone = load_mask_alpha(room.score_mask_bytes, size=(width, height)) > cfg.score_mask_threshold

        changed = zone & (pixel_diff(original, working) > cfg.change_threshold)
        edges = seam_pixels(changed)
        edge_count = int(edges.sum())
        if edge_count == 0:
            logger.info("[Refine] Edge polish found no seam pixels")
            return _encode_png(working)

        darkened = working.copy()
        darkened[edges] *= cfg.edge_darken_factor

        blurred_image = Image.fromarray(np.clip(np.rint(darkened), 0, 255).astype(np.uint8)).filter(
            ImageFilter.GaussianBlur(radius=cfg.edge_blur_sigma)
        )
        blurred = np.asarray(blurred_image, dtype=np.float32)

        polished = working.copy()
        weight = cfg.edge_blend_weight
        polished[edges] = darkened[edges] * weight + blurred[edges] * (1.0 - weight)

        logger.info(f"[Refine] Edge polish softened {edge_count} seam pixels")
        return _encode_png(polished)

    async def refine(
        self, candidate: CandidateImage, room: PreparedRoomImage, carpet: PreparedCarpetImage, mode: str
    ) -> RefinementResult:
        result = RefinementResult(data=candidate.data, mime_type=candidate.mime_type)

        if self.should_run_shadow_pass(candidate, mode):
            shadowed = await self.shadow_pass(candidate, room, carpet, mode)
            if shadowed is not None:
                result.data = shadowed.data
                result.mime_type = shadowed.mime_type
                result.applied.append("shadow")

        if self.config.enable_edge_polish:
            result.data = self.edge_polish(result.data, room)
            result.mime_type = "image/png"
            result.applied.append("edge_polish")

        return result
