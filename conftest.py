import base64
import os
import struct
import zlib

# In-memory default so importing the app never touches a real database
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient

from civicmap.api import deps
from civicmap.domain.models import Location, ReportDraft, ReportMode, ReportCategory, ReportType
from civicmap.domain.services.change_feed import ChangeFeed
from civicmap.domain.services.geocoding_service import ReverseGeocoder
from civicmap.domain.services.leaderboard_service import LeaderboardService
from civicmap.domain.services.profile_store import SqlProfileStore
from civicmap.domain.services.report_store import SqlReportStore
from civicmap.domain.services.security import create_access_token
from civicmap.infrastructure.database import Base, make_session_factory
from civicmap.main import app


@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """SQLite database file per test, shared by every thread of the test."""
    factory = make_session_factory(f"sqlite:///{tmp_path / 'civicmap_test.db'}")
    Base.metadata.create_all(bind=factory.kw["bind"])
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture(scope="function")
def feed():
    return ChangeFeed()


@pytest.fixture(scope="function")
def report_store(session_factory, feed):
    return SqlReportStore(session_factory, feed)


@pytest.fixture(scope="function")
def profile_store(session_factory, feed):
    return SqlProfileStore(session_factory, feed)


@pytest.fixture(scope="function")
def leaderboard(session_factory):
    return LeaderboardService(session_factory)


@pytest.fixture(scope="function")
def client(report_store, profile_store, leaderboard):
    """Create a test client with store overrides."""
    app.dependency_overrides[deps.get_report_store] = lambda: report_store
    app.dependency_overrides[deps.get_profile_store] = lambda: profile_store
    app.dependency_overrides[deps.get_leaderboard_service] = lambda: leaderboard
    app.dependency_overrides[deps.get_geocoder] = lambda: ReverseGeocoder(enabled=False)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client_no_db():
    """Create a test client without database dependency for basic endpoint tests."""
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Build bearer headers for a uid."""
    def _headers(uid: str, display_name: str = None) -> dict:
        token = create_access_token(uid, display_name=display_name)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def problem_draft():
    return ReportDraft(
        mode=ReportMode.PROBLEM,
        type=ReportType.VANDALISM,
        category=ReportCategory.FURNITURE,
        description="Broken bench",
        photo="https://example.org/bench.jpg",
        location=Location(lat=50.63, lng=3.06),
    )


@pytest.fixture
def png_header_only():
    """Builds a tiny PNG whose header declares width x height RGB pixels but carries no pixel data."""
    def _build(width: int, height: int) -> bytes:
        def chunk(kind: bytes, data: bytes) -> bytes:
            return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data))

        ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
        return (
            b"\x89PNG\r\n\x1a\n"
            + chunk(b"IHDR", ihdr)
            + chunk(b"IDAT", zlib.compress(b""))
            + chunk(b"IEND", b"")
        )
    return _build


@pytest.fixture
def oversized_photo(png_header_only):
    """Data URL of a PNG declaring 20000 x 20000 pixels, beyond Pillow's decompression bomb limit."""
    return "data:image/png;base64," + base64.b64encode(png_header_only(20000, 20000)).decode("ascii")
