"""
Render Orchestrator

Builds image-edit requests for the external service (OpenAI Images edit endpoint),
sends them and turns the response into CandidateImage objects.

Failure protocol:
- If the service rejects the mask (its error text mentions "mask"), the same
  request is sent once more without the mask and with a single variant.
- A "mask" error on a request that carried no mask is reported as UNKNOWN.
- Every other failure is raised as UpstreamServiceError and never retried here.
"""
import base64
import io
import logging
from typing import List, Optional

import httpx
import openai
from PIL import Image

from core.config import RenderPipelineConfig, settings
from core.errors import InternalError, UpstreamErrorCategory, UpstreamServiceError, classify_upstream_error
from services.candidate_scorer import CandidateImage
from services.preparation_cache import PreparedCarpetImage, PreparedRoomImage

logger = logging.getLogger(__name__)

PROMPTS = {
    "preview": (
        "Remove any existing rug from the room.\n"
        "Place the provided rug image on the floor in a natural position.\n"
        "Keep perspective approximate.\n"
        "Low detail, basic realism.\n"
        "Fast render, no refinement."
    ),
    "normal": (
        "Remove any existing rug from the room.\n"
        "Place the provided rug image naturally on the floor, centered in the seating area.\n"
        "Match the rug perspective to the room.\n"
        "Blend lighting and color realistically.\n"
        "Preserve furniture positions and room structure.\n"
        "Photorealistic result."
    ),
}

SHADOW_PROMPT = (
    "Add a soft, subtle contact shadow where the rug meets the floor.\n"
    "Do not alter the rug geometry, pattern, colors or position.\n"
    "Do not change anything else in the room."
)


def normalize_mode(mode: Optional[str]) -> str:
    """Anything other than an explicit preview request renders at normal quality."""
    return "preview" if (mode or "").strip().lower() == "preview" else "normal"


def detect_mime_type(image_bytes: bytes) -> str:
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            fmt = (image.format or "PNG").lower()
    except (OSError, ValueError):
        return "image/png"
    return "image/jpeg" if fmt in ("jpeg", "jpg") else f"image/{fmt}"


def _upstream_message(error: openai.APIError) -> str:
    """Pull the provider's human-readable message out of an OpenAI error."""
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        inner = body.get("error", body)
        if isinstance(inner, dict) and inner.get("message"):
            return str(inner["message"])
    return getattr(error, "message", None) or str(error)


def _without_mask_category(error: UpstreamServiceError) -> UpstreamServiceError:
    """A request sent without a mask cannot have a mask problem; report it as unknown."""
    logger.error(f"[Render] Upstream failed on a mask-less request: {error.message}")
    return UpstreamServiceError(error.message, UpstreamErrorCategory.UNKNOWN)


class RenderOrchestrator:
    """Talks to the image-edit service on behalf of the render pipeline."""

    def __init__(
        self,
        config: Optional[RenderPipelineConfig] = None,
        client: Optional[openai.AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or RenderPipelineConfig()
        self._client = client
        self.http_client = http_client

    def ensure_configured(self):
        """Fail fast, before any attempt row exists, when no key is set."""
        if self._client is None and not settings.openai_api_key:
            raise InternalError("Server key is not configured.")

    @property
    def client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self.ensure_configured()
            # No client-side retries: the mask fallback in render() is the only retry
            self._client = openai.AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=self.config.upstream_timeout,
                max_retries=0,
            )
        return self._client

    def build_request(
        self,
        room: PreparedRoomImage,
        carpet: PreparedCarpetImage,
        mode: str,
        variant_count: int,
        mask_bytes: Optional[bytes] = None,
        instruction: Optional[str] = None,
    ) -> dict:
        """Assemble keyword arguments for images.edit."""
        mode = normalize_mode(mode)
        room_ext = "png" if room.mime_type == "image/png" else "jpg"
        request = {
            "model": self.config.model,
            "image": [
                (f"room.{room_ext}", room.normalized_bytes, room.mime_type),
                ("carpet.png", carpet.normalized_bytes, carpet.mime_type),
            ],
            "prompt": instruction or PROMPTS[mode],
            "n": max(1, int(variant_count)),
            "size": self.config.output_size,
            "quality": self.config.quality_for(mode),
            "timeout": self.config.upstream_timeout,
        }
        if mask_bytes is not None:
            request["mask"] = ("mask.png", mask_bytes, "image/png")
        return request

    async def _call(self, request: dict) -> List[CandidateImage]:
        try:
            response = await self.client.images.edit(**request)
        except (openai.APITimeoutError, openai.APIConnectionError) as e:
            raise UpstreamServiceError(f"Image service unreachable: {e}", UpstreamErrorCategory.NETWORK) from e
        except openai.APIError as e:
            message = _upstream_message(e)
            raise UpstreamServiceError(message, classify_upstream_error(message)) from e

        items = getattr(response, "data", None) or []
        candidates = []
        for item in items:
            data = await self._read_item(item)
            if data:
                candidates.append(CandidateImage(data=data, mime_type=detect_mime_type(data)))

        if not candidates:
            raise UpstreamServiceError("No image data returned from upstream.", UpstreamErrorCategory.UNKNOWN)
        return candidates

    async def _read_item(self, item) -> Optional[bytes]:
        b64_json = getattr(item, "b64_json", None)
        if b64_json:
            return base64.b64decode(b64_json)
        url = getattr(item, "url", None)
        if url:
            return await self._fetch_url(url)
        return None

    async def _fetch_url(self, url: str) -> bytes:
        try:
            if self.http_client is not None:
                response = await self.http_client.get(url)
            else:
                async with httpx.AsyncClient(timeout=self.config.upstream_timeout) as client:
                    response = await client.get(url)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise UpstreamServiceError(f"Timed out fetching rendered image: {e}", UpstreamErrorCategory.NETWORK) from e
        except httpx.HTTPError as e:
            raise UpstreamServiceError(f"Could not fetch rendered image: {e}", UpstreamErrorCategory.UNKNOWN) from e
        return response.content

    async def render(
        self,
        room: PreparedRoomImage,
        carpet: PreparedCarpetImage,
        mode: str,
        variant_count: int,
        mask_bytes: Optional[bytes] = None,
        instruction: Optional[str] = None,
    ) -> List[CandidateImage]:
        """
        Send one edit request and return its candidates.

        Falls back to a single mask-less variant exactly once when the service
        rejects the mask.
        """
        mode = normalize_mode(mode)
        request = self.build_request(room, carpet, mode, variant_count, mask_bytes, instruction)
        logger.info(
            f"[Render] Upstream call mode={mode} n={request['n']} quality={request['quality']} "
            f"mask={'yes' if mask_bytes is not None else 'no'}"
        )

        try:
            candidates = await self._call(request)
        except UpstreamServiceError as e:
            if e.category != UpstreamErrorCategory.MASK_FORMAT:
                logger.error(f"[Render] Upstream failed ({e.category.value}): {e.message}")
                raise
            if mask_bytes is None:
                raise _without_mask_category(e) from e
            logger.warning(f"[Render] Mask rejected by upstream, retrying once without mask: {e.message}")
            fallback = self.build_request(room, carpet, mode, 1, None, instruction)
            try:
                candidates = await self._call(fallback)
            except UpstreamServiceError as retry_error:
                if retry_error.category != UpstreamErrorCategory.MASK_FORMAT:
                    raise
                raise _without_mask_category(retry_error) from retry_error

        logger.info(f"[Render] Received {len(candidates)} candidate(s)")
        return candidates
