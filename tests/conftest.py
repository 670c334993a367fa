from __future__ import annotations

import os

os.environ["ENVIRONMENT"] = "test"

import pytest
from sqlalchemy.orm import sessionmaker

from orbit_assessment.infrastructure.config import reset_settings
from orbit_assessment.infrastructure.db import make_engine_and_session


@pytest.fixture(autouse=True)
def fresh_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def SessionLocal(tmp_path) -> sessionmaker:
    """File-backed SQLite so every session sees its own connection."""
    engine, factory = make_engine_and_session(f"sqlite:///{tmp_path / 'orbit.db'}")
    yield factory
    engine.dispose()


@pytest.fixture
def session(SessionLocal):
    with SessionLocal() as s:
        yield s
