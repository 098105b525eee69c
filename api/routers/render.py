"""
Render API route: place a rug photo into a room photo
"""
import base64
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from schemas.render import CandidateMetricsSchema, RenderResponse
from schemas.usage import UsageSnapshotResponse
from services.render_service import RenderService
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import get_current_user
from core.config import settings
from core.database import get_db
from core.errors import ValidationError
from database.models import UserAccount
from middleware.logging_middleware import get_logger

logger = get_logger(__name__)
router = APIRouter()


def get_render_service(request: Request) -> RenderService:
    """The process-wide render service created at startup."""
    return request.app.state.render_service


async def _read_upload(upload: Optional[UploadFile], field_name: str) -> bytes:
    if upload is None:
        raise ValidationError("room_image and carpet_image are required.")
    data = await upload.read()
    if not data:
        raise ValidationError(f"{field_name} is empty.")
    if len(data) > settings.max_file_size:
        raise ValidationError(f"{field_name} exceeds {settings.max_file_size // (1024 * 1024)}MB.")
    return data


@router.post("/render", response_model=RenderResponse)
async def render_rug(
    room_image: Optional[UploadFile] = File(None),
    carpet_image: Optional[UploadFile] = File(None),
    mode: str = Form("normal"),
    carpet_name: Optional[str] = Form(None),
    note: Optional[str] = Form(None),
    current_user: UserAccount = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    render_service: RenderService = Depends(get_render_service),
):
    """
    Render the carpet into the room photo.

    One credit is taken only when an image is delivered. Failures are reported
    as {"code", "error"} by the application's exception handlers.
    """
    room_bytes = await _read_upload(room_image, "room_image")
    carpet_bytes = await _read_upload(carpet_image, "carpet_image")

    logger.info(
        f"[Render] Request mode={mode} carpet={carpet_name or 'unnamed'} "
        f"room={len(room_bytes)}B carpet_image={len(carpet_bytes)}B"
    )

    outcome = await render_service.render(
        db, current_user.id, room_bytes, carpet_bytes, mode=mode, note=note
    )

    usage = None
    if outcome.usage is not None:
        usage = UsageSnapshotResponse(**outcome.usage.to_dict())

    metrics = None
    if outcome.metrics is not None:
        metrics = CandidateMetricsSchema(**outcome.metrics.to_dict())

    return RenderResponse(
        b64_json=base64.b64encode(outcome.image_bytes).decode("ascii"),
        mime_type=outcome.mime_type,
        attempt_id=outcome.attempt_id,
        mode=outcome.mode,
        metrics=metrics,
        refinements=outcome.refinements,
        usage=usage,
    )
