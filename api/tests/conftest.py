"""
Pytest configuration and fixtures for the render API tests.
"""
import base64
import io
import os
import random
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

# Settings are read at import time; keep tests off any real database or key
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./render_api_test.db")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("OPENAI_API_KEY", "")

import httpx  # noqa: E402
import numpy as np  # noqa: E402
import openai  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from PIL import Image, ImageDraw  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from core.config import RenderPipelineConfig  # noqa: E402
from database.models import Base, UserAccount, UserRole  # noqa: E402
from services.mask_synthesis_service import MaskSynthesisService, load_mask_alpha  # noqa: E402
from services.preparation_cache import PreparationCache  # noqa: E402

WALL_COLOR = (200, 190, 170)
FLOOR_COLOR = (140, 110, 80)
STRIPE_COLORS = ((180, 40, 40), (230, 220, 200))

UPSTREAM_URL = "https://api.openai.com/v1/images/edits"


# Image helpers


def encode_image(image: Image.Image, fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    if fmt == "JPEG":
        image = image.convert("RGB")
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def make_room_image(width: int = 320, height: int = 240, fmt: str = "JPEG", shade: int = 0) -> bytes:
    """A wall above a floor; shade makes otherwise identical rooms hash differently."""
    img = Image.new("RGB", (width, height), color=tuple(c - shade for c in WALL_COLOR))
    draw = ImageDraw.Draw(img)
    draw.rectangle([0, height // 2, width, height], fill=FLOOR_COLOR)
    return encode_image(img, fmt)


def make_carpet_image(width: int = 64, height: int = 48) -> bytes:
    img = Image.new("RGB", (width, height), color=STRIPE_COLORS[0])
    draw = ImageDraw.Draw(img)
    for x in range(0, width, 6):
        draw.rectangle([x, 0, x + 2, height], fill=STRIPE_COLORS[1])
    return encode_image(img, "PNG")


def decode_rgb(image_bytes: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(image_bytes)) as img:
        return np.array(img.convert("RGB"))


def paint_striped_rug(base_rgb: np.ndarray, box, stripe_width: int = 3) -> np.ndarray:
    """Paint vertical stripes into box = (x0, y0, x1, y1), exclusive ends."""
    out = base_rgb.copy()
    x0, y0, x1, y1 = box
    for x in range(x0, x1):
        color = STRIPE_COLORS[((x - x0) // stripe_width) % 2]
        out[y0:y1, x] = color
    return out


def score_zone_box(prepared):
    """Bounding box (x0, y0, x1, y1) of the score zone, exclusive ends."""
    zone = load_mask_alpha(prepared.score_mask_bytes) > 120
    rows, cols = np.nonzero(zone)
    return int(cols.min()), int(rows.min()), int(cols.max()) + 1, int(rows.max()) + 1


def rug_candidate(prepared, inset: int = 6, dirty_outside: bool = False) -> bytes:
    """Room with a striped rug inside the score zone, encoded as PNG."""
    x0, y0, x1, y1 = score_zone_box(prepared)
    rgb = paint_striped_rug(decode_rgb(prepared.normalized_bytes), (x0 + inset, y0 + inset, x1 - inset, y1 - inset))
    if dirty_outside:
        # Repaint the wall: heavy change far outside the floor zone
        rgb[: max(1, y0 - 20), :] = (20, 20, 20)
    return encode_image(Image.fromarray(rgb), "PNG")


# OpenAI boundary helpers


def image_response(*payloads: bytes):
    """Shape of an images.edit response carrying base64 images."""
    return SimpleNamespace(
        data=[SimpleNamespace(b64_json=base64.b64encode(p).decode("ascii"), url=None) for p in payloads]
    )


def api_error(error_cls, message: str, status_code: int = 400):
    """Build an OpenAI status error the way the SDK raises it."""
    request = httpx.Request("POST", UPSTREAM_URL)
    response = httpx.Response(status_code, request=request)
    return error_cls(message, response=response, body={"error": {"message": message}})


def timeout_error():
    return openai.APITimeoutError(request=httpx.Request("POST", UPSTREAM_URL))


@pytest.fixture
def mock_openai_client():
    """AsyncOpenAI stand-in; set client.images.edit.return_value / side_effect per test."""
    client = MagicMock()
    client.images = MagicMock()
    client.images.edit = AsyncMock()
    return client


# Pipeline fixtures


@pytest.fixture
def pipeline_config():
    return RenderPipelineConfig()


@pytest.fixture
def seeded_mask_service(pipeline_config):
    return MaskSynthesisService(pipeline_config, rng=random.Random(1234))


@pytest.fixture
def preparation_cache(pipeline_config, seeded_mask_service):
    return PreparationCache(pipeline_config, seeded_mask_service)


@pytest.fixture
def room_bytes():
    return make_room_image()


@pytest.fixture
def carpet_bytes():
    return make_carpet_image()


@pytest.fixture
def prepared_room(preparation_cache, room_bytes):
    return preparation_cache.prepare(room_bytes)


@pytest.fixture
def prepared_carpet(preparation_cache, carpet_bytes):
    return preparation_cache.prepare_carpet(carpet_bytes)


# Database fixtures (on-disk SQLite so separate sessions really contend)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'render_api.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


async def create_account(session_factory, credit: int, role: UserRole = UserRole.USER, email: str = None) -> str:
    """Insert an account row and return its id."""
    async with session_factory() as session:
        user = UserAccount(
            email=email or f"user{random.randint(0, 10**9)}@example.com",
            full_name="Test User",
            role=role,
            credit=credit,
        )
        session.add(user)
        await session.commit()
        return user.id


@pytest.fixture
def mock_db_session():
    """Create a mock async database session."""
    session = AsyncMock()
    session.execute = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    return session
