import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Importing the application module builds the default app; keep its storage out of the repo.
os.environ.setdefault("STORAGE_PATH", tempfile.mkdtemp(prefix="fileuploader-test-"))
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

from fileuploader.core.config import Settings
from fileuploader.core.security import TokenService
from fileuploader.main import create_app
from fileuploader.services.rate_limiter import SlidingWindowRateLimiter
from fileuploader.services.storage import LocalStorageBackend

PNG_BLOB = b"\x89PNG\r\n\x1a\n\x00\x01"
PDF_BLOB = b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n1 0 obj\n"
JPEG_BLOB = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01"


class FakeClock:
    """Monotonic clock for the rate limiter that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture
def settings(tmp_path):
    return Settings(
        STORAGE_PATH=str(tmp_path / "storage"),
        JWT_SECRET_KEY="test-secret",
        MAX_FILE_SIZE=1024,
        RATE_LIMIT=100,
        CHUNK_SIZE=4,
    )


@pytest.fixture
def storage(settings):
    return LocalStorageBackend(settings.storage_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rate_limit():
    return 100


@pytest.fixture
def limiter(clock, rate_limit):
    return SlidingWindowRateLimiter(rate_limit, clock=clock)


@pytest.fixture
def token_service(settings):
    return TokenService(settings.jwt_secret_key, timedelta(hours=1))


@pytest.fixture
def app_instance(settings, storage, limiter, token_service):
    return create_app(
        settings,
        storage=storage,
        rate_limiter=limiter,
        token_service=token_service,
    )


@pytest.fixture
def auth_headers(token_service):
    def _headers(subject_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token_service.issue(subject_id)}"}

    return _headers


@pytest_asyncio.fixture
async def client(app_instance):
    transport = ASGITransport(app=app_instance)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
