"""
Render Service

Runs one rug-placement render from uploaded bytes to final image:

    prepare -> attempt row -> edit call(s) -> candidate selection -> refinement -> ledger -> result

Everything runs in order within the calling request. There is no queue and no
retry beyond the orchestrator's mask fallback.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import RenderPipelineConfig, settings
from core.errors import InternalError, LimitReachedError, RenderPipelineError, truncate_error
from middleware.logging_middleware import get_logger
from services.candidate_scorer import CandidateMetrics, CandidateScorer
from services.mask_synthesis_service import MaskSynthesisService
from services.preparation_cache import PreparationCache
from services.refinement_service import RefinementService
from services.render_orchestrator import RenderOrchestrator, normalize_mode
from services.usage_ledger_service import UsageLedgerService, UsageSnapshot

logger = get_logger(__name__)


@dataclass
class RenderOutcome:
    image_bytes: bytes
    mime_type: str
    attempt_id: str
    mode: str
    metrics: Optional[CandidateMetrics] = None
    usage: Optional[UsageSnapshot] = None
    refinements: List[str] = field(default_factory=list)
    candidate_count: int = 1


class RenderService:
    """Composes the pipeline components; one instance lives for the process."""

    def __init__(
        self,
        config: Optional[RenderPipelineConfig] = None,
        preparation_cache: Optional[PreparationCache] = None,
        orchestrator: Optional[RenderOrchestrator] = None,
        scorer: Optional[CandidateScorer] = None,
        refinement: Optional[RefinementService] = None,
        ledger: Optional[UsageLedgerService] = None,
    ):
        self.config = config or settings.render_pipeline_config()
        self.preparation_cache = preparation_cache or PreparationCache(
            self.config, MaskSynthesisService(self.config)
        )
        self.orchestrator = orchestrator or RenderOrchestrator(self.config)
        self.scorer = scorer or CandidateScorer(self.config)
        self.refinement = refinement or RefinementService(self.orchestrator, self.config)
        self.ledger = ledger or UsageLedgerService(
            daily_limit_hint=settings.daily_render_limit, error_max_length=self.config.error_max_length
        )

    async def _record_failure(self, db: AsyncSession, attempt_id: str, error: Optional[str]):
        """Mark the attempt failed without letting a database error mask the render error."""
        try:
            await self.ledger.mark_attempt_failed(db, attempt_id, error)
        except Exception:
            logger.exception(f"[Render] Could not record failure for attempt {attempt_id}")

    async def render(
        self,
        db: AsyncSession,
        user_id: str,
        room_bytes: bytes,
        carpet_bytes: bytes,
        mode: Optional[str] = None,
        note: Optional[str] = None,
    ) -> RenderOutcome:
        mode = normalize_mode(mode)

        # Input problems surface here, before any attempt row or upstream call
        room = self.preparation_cache.prepare(room_bytes)
        carpet = self.preparation_cache.prepare_carpet(carpet_bytes)
        self.orchestrator.ensure_configured()

        if note:
            logger.info(f"[Render] Customer note received ({len(note)} chars), not used in instruction")

        attempt = await self.ledger.create_render_attempt(db, user_id, mode)
        attempt_id = attempt.id

        try:
            mask = room.api_mask_bytes if self.config.use_api_mask else None
            candidates = await self.orchestrator.render(
                room, carpet, mode, self.config.variants_for(mode), mask_bytes=mask
            )

            if self.config.enable_candidate_scoring:
                selected = self.scorer.select(candidates, room.normalized_bytes, room.score_mask_bytes)
            else:
                selected = candidates[0]

            refined = await self.refinement.refine(selected, room, carpet, mode)

            consumed = await self.ledger.consume(db, user_id, amount=1, attempt_id=attempt_id)
            if not consumed.allowed:
                raise LimitReachedError()

            usage = await self.ledger.usage_snapshot(db, user_id)

        except LimitReachedError:
            logger.info(f"[Render] Attempt {attempt_id} stopped: limit reached")
            raise
        except RenderPipelineError as e:
            # Upstream and other pipeline errors keep their own status and message
            await self._record_failure(db, attempt_id, e.message)
            raise
        except Exception as e:
            logger.exception(f"[Render] Attempt {attempt_id} failed unexpectedly: {e}")
            await self._record_failure(db, attempt_id, truncate_error(str(e), self.config.error_max_length))
            raise InternalError("Render failed.", attempt_id=attempt_id) from e

        logger.info(
            f"[Render] Attempt {attempt_id} succeeded: candidates={len(candidates)}, "
            f"refinements={refined.applied or 'none'}"
        )

        return RenderOutcome(
            image_bytes=refined.data,
            mime_type=refined.mime_type,
            attempt_id=attempt_id,
            mode=mode,
            metrics=selected.metrics,
            usage=usage,
            refinements=refined.applied,
            candidate_count=len(candidates),
        )
