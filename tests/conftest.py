"""Shared fixtures: a throwaway SQLite database and a 2-d service on top of it."""
import os

# Must be set before face_organizer.database builds its module-level engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio

from face_organizer.config import Thresholds
from face_organizer.database import Base, build_engine, build_session_maker
from face_organizer import models  # noqa: F401
from face_organizer.service import FaceOrganizerService


@pytest.fixture
def thresholds():
    """Default thresholds on 2-dimensional vectors, easy to reason about by hand."""
    return Thresholds(embedding_dim=2)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'faces.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return build_session_maker(engine)


@pytest.fixture
def service(session_maker, thresholds):
    return FaceOrganizerService(session_maker=session_maker, thresholds=thresholds)
