"""
Room/Carpet Preparation Service

Normalizes uploaded images before they are sent to the image-edit service and
memoizes the prepared room (image + masks) by the SHA-256 of the original upload.

The cache is a bounded insertion-ordered store: once it holds more than
`capacity` entries the oldest *inserted* entry is dropped, whether or not it was
read recently. Two requests preparing the same new upload at the same time may
both build it; the results are equivalent and the later store simply replaces
the earlier one.
"""
import hashlib
import io
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from core.config import RenderPipelineConfig
from core.errors import ValidationError
from services.mask_synthesis_service import MaskSynthesisService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedRoomImage:
    """Normalized room image plus the masks synthesized for its final size."""

    content_hash: str
    normalized_bytes: bytes
    api_mask_bytes: bytes
    score_mask_bytes: bytes
    width: int
    height: int
    original_width: int
    original_height: int
    mime_type: str = "image/jpeg"


@dataclass(frozen=True)
class PreparedCarpetImage:
    """Normalized carpet sample (never cached)."""

    normalized_bytes: bytes
    width: int
    height: int
    mime_type: str = "image/png"


def _open_upload(data: bytes, label: str) -> Image.Image:
    """Decode uploaded bytes, applying EXIF orientation."""
    if not data:
        raise ValidationError(f"{label} is required.")
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(f"[Prepare] Could not decode {label}: {e}")
        raise ValidationError(f"{label} could not be read as an image.") from e
    return ImageOps.exif_transpose(image)


class PreparationCache:
    """Prepares room and carpet uploads; caches prepared rooms by content hash."""

    def __init__(
        self,
        config: Optional[RenderPipelineConfig] = None,
        mask_service: Optional[MaskSynthesisService] = None,
        capacity: Optional[int] = None,
    ):
        self.config = config or RenderPipelineConfig()
        self.mask_service = mask_service or MaskSynthesisService(self.config)
        self.capacity = capacity if capacity is not None else self.config.cache_capacity
        self._entries: "OrderedDict[str, PreparedRoomImage]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, content_hash: str) -> bool:
        return content_hash in self._entries

    @staticmethod
    def content_hash(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def get(self, content_hash: str) -> Optional[PreparedRoomImage]:
        # Reads never reorder entries (FIFO, not LRU)
        return self._entries.get(content_hash)

    def _store(self, prepared: PreparedRoomImage) -> None:
        with self._lock:
            self._entries[prepared.content_hash] = prepared
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"[Prepare] Evicted {evicted[:12]} (capacity {self.capacity})")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def prepare(self, room_bytes: bytes) -> PreparedRoomImage:
        """Return the prepared room for these upload bytes, building it on a miss."""
        content_hash = self.content_hash(room_bytes or b"")
        cached = self.get(content_hash)
        if cached is not None:
            logger.info(f"[Prepare] Cache hit {content_hash[:12]}")
            return cached

        image = _open_upload(room_bytes, "Room image")
        original_width, original_height = image.size

        normalized_bytes = _fit_and_encode(
            image, self.config.room_max_size, fmt="JPEG", quality=self.config.room_jpeg_quality
        )

        # Dimensions are re-read from the encoded output so the masks match what is sent upstream
        with Image.open(io.BytesIO(normalized_bytes)) as encoded:
            width, height = encoded.size

        masks = self.mask_service.synthesize(width, height)

        prepared = PreparedRoomImage(
            content_hash=content_hash,
            normalized_bytes=normalized_bytes,
            api_mask_bytes=masks.api_mask,
            score_mask_bytes=masks.score_mask,
            width=width,
            height=height,
            original_width=original_width,
            original_height=original_height,
        )
        self._store(prepared)

        logger.info(
            f"[Prepare] Cache miss {content_hash[:12]}: {original_width}x{original_height} -> {width}x{height}, "
            f"{len(normalized_bytes) // 1024}KB"
        )
        return prepared

    def prepare_carpet(self, carpet_bytes: bytes) -> PreparedCarpetImage:
        """Bounded resize of the carpet sample; not cached."""
        image = _open_upload(carpet_bytes, "Carpet image")
        normalized_bytes = _fit_and_encode(image, self.config.carpet_max_size, fmt="PNG")
        with Image.open(io.BytesIO(normalized_bytes)) as encoded:
            width, height = encoded.size
        return PreparedCarpetImage(normalized_bytes=normalized_bytes, width=width, height=height)


def _fit_and_encode(image: Image.Image, max_size: Tuple[int, int], fmt: str, quality: int = 90) -> bytes:
    """Shrink to fit within max_size (never enlarge) and encode."""
    if fmt == "JPEG":
        image = image.convert("RGB")
    elif image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGBA")

    if image.width > max_size[0] or image.height > max_size[1]:
        image = image.copy()
        image.thumbnail(max_size, Image.Resampling.LANCZOS)

    buffer = io.BytesIO()
    if fmt == "JPEG":
        image.save(buffer, format="JPEG", quality=quality, optimize=True)
    else:
        image.save(buffer, format=fmt, optimize=True)
    return buffer.getvalue()
