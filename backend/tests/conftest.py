"""Add backend to path so tests resolve 'from models import' when run from project root."""
import os
import sys
import tempfile

_backend_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)

os.environ.setdefault("EXTRACTION_CACHE_DIR", tempfile.mkdtemp(prefix="extraction-cache-"))
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402


@pytest.fixture
def session_factory():
    from db.session import Base
    from db import models  # noqa: F401

    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def gateway(session_factory):
    from gateway import SqlPersistenceGateway

    return SqlPersistenceGateway(session_factory)
