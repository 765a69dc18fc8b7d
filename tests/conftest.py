# tests/conftest.py
from __future__ import annotations

import os
import sys
import logging
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

# settings are read at import time; point logs at a scratch dir first
os.environ.setdefault("GEARFLOW_DATA_ROOT", tempfile.mkdtemp(prefix="gearflow-test-"))
os.environ.setdefault("CREATE_SCHEMA_ON_STARTUP", "false")

from httpx import AsyncClient, ASGITransport

from gearflow.database import close_db, create_schema, get_session_factory, init_db, transaction
from gearflow.db_models import Asset, AssetStatus, Location, Role, User
from gearflow.models import BulkSkuIn
from gearflow.services.ledger import BulkStockLedger

BASE_DAY = datetime(2030, 3, 4, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0) -> datetime:
    """A fixed, far-future UTC instant on the test day."""
    return BASE_DAY + timedelta(hours=hour, minutes=minute)


def iso(hour: int, minute: int = 0) -> str:
    return at(hour, minute).isoformat().replace("+00:00", "Z")


# =========================
# Logging -> stdout
# =========================
@pytest.fixture(scope="session", autouse=True)
def _tests_log_to_stdout():
    root = logging.getLogger()
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stdout for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
    root.setLevel(os.getenv("TEST_LOG_LEVEL", "INFO").upper())


# Make anyio run on asyncio (so our async fixtures work everywhere)
@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


# ==============================================================
# Database: one file-backed SQLite database per test
# ==============================================================

@pytest.fixture
async def session_factory(anyio_backend, tmp_path):
    await close_db()
    await init_db(f"sqlite+aiosqlite:///{(tmp_path / 'gearflow.db').as_posix()}")
    await create_schema()
    yield get_session_factory()
    await close_db()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def seed(session_factory):
    """Two locations, one user per role, three assets and an XLR bin with 5 on hand."""
    async with session_factory() as session:
        async with transaction(session):
            main = Location(name="Main Cage", address="Media Center B12")
            annex = Location(name="Annex")
            session.add_all([main, annex])
            await session.flush()

            admin = User(name="Avery Admin", email="admin@example.edu", role=Role.ADMIN, location_id=main.id)
            staff = User(name="Sam Staff", email="staff@example.edu", role=Role.STAFF, location_id=main.id)
            student = User(name="Robin Student", email="student@example.edu", role=Role.STUDENT)
            camera = Asset(
                asset_tag="CAM-001", type="camera", brand="Canon", model="C70",
                serial_number="SN-CAM-001", qr_code_value="QR-CAM-001", location_id=main.id,
            )
            mic = Asset(
                asset_tag="MIC-001", type="microphone", brand="Sennheiser", model="MKE 600",
                serial_number="SN-MIC-001", qr_code_value="QR-MIC-001", location_id=main.id,
            )
            lens = Asset(
                asset_tag="LENS-001", type="lens", brand="Sigma", model="18-35",
                serial_number="SN-LENS-001", qr_code_value="QR-LENS-001", location_id=main.id,
                status=AssetStatus.MAINTENANCE,
            )
            session.add_all([admin, staff, student, camera, mic, lens])
            await session.flush()

            ids = SimpleNamespace(
                location=main.id, annex=annex.id,
                admin=admin.id, staff=staff.id, student=student.id,
                camera=camera.id, mic=mic.id, lens=lens.id,
            )

        sku = await BulkStockLedger(session).create_sku(
            BulkSkuIn(
                name="XLR cable", category="audio", unit="each",
                location_id=ids.location, bin_qr_code_value="BIN-XLR", initial_quantity=5,
            ),
            ids.staff,
        )
        ids.xlr = sku.id
    return ids


# ==============================================================
# HTTP client against the ASGI app
# ==============================================================

@pytest.fixture
async def client(seed):
    from gearflow.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def as_user(seed):
    """Build actor headers: as_user("admin") -> {"X-Actor-Id": ..., "X-Actor-Role": "ADMIN"}."""
    def _headers(who: str = "staff") -> dict:
        return {"X-Actor-Id": str(getattr(seed, who)), "X-Actor-Role": who.upper()}
    return _headers
