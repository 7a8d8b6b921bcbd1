"""Shared pytest fixtures: a throwaway SQLite database and API clients."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from main import Base, CategoriaModel, Settings, UsuarioModel, create_app, get_password_hash
from sessions import SessionStore
from tests.helpers import ADMIN, HASHED, VIEWER, FakeClock, login


async def _prepare_database(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(
            UsuarioModel.__table__.insert(),
            [
                {"id": 1, "usuario": ADMIN[0], "password": ADMIN[1], "nombre": "Administrador", "rol": "admin"},
                {"id": 2, "usuario": VIEWER[0], "password": VIEWER[1], "nombre": "Solo lectura", "rol": "viewer"},
                {"id": 3, "usuario": HASHED[0], "password": get_password_hash(HASHED[1]), "nombre": "Cifrado", "rol": "admin"},
            ],
        )
        await conn.execute(
            CategoriaModel.__table__.insert(),
            [
                {"id": 1, "nombre": "Comida"},
                {"id": 2, "nombre": "Transporte"},
                {"id": 3, "nombre": "Salario"},
            ],
        )


@pytest.fixture
def engine(tmp_path):
    # NullPool: every TestClient request runs on its own event loop
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'finanzas.db'}", poolclass=NullPool)
    asyncio.run(_prepare_database(engine))
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(engine, clock):
    settings = Settings(database_url=str(engine.url), session_ttl_seconds=60)
    return create_app(settings=settings, engine=engine, sessions=SessionStore(ttl_seconds=60, clock=clock))


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def admin_client(app):
    client = TestClient(app)
    assert login(client, ADMIN).status_code == 200
    return client


@pytest.fixture
def viewer_client(app):
    client = TestClient(app)
    assert login(client, VIEWER).status_code == 200
    return client
