"""Shared fixtures: in-memory database, fake registry API and a manual clock."""
from __future__ import annotations

import os

# Settings are read at import time, so point them at SQLite before any
# project module is imported.
os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "text")

from urllib.parse import unquote

import httpx
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from intake import models
from intake.models import Base
from registry.clock import ManualClock
from registry.vin_client import RegistryClient

HONDA_VIN = "1HGCM82633A004352"
CHEVY_VIN = "1GCUYDED5LZ123456"


class FakeRegistryAPI:
    """In-process stand-in for the vPIC REST API, served via httpx.MockTransport."""

    def __init__(self):
        self.vins: dict[str, dict[str, str]] = {}
        self.makes: list[str] = []
        self.models: dict[str, list[str]] = {}
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.connect_error = False
        self.payload: dict | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.connect_error:
            raise httpx.ConnectError("connection refused", request=request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"Message": "error"})
        if self.payload is not None:
            return httpx.Response(200, json=self.payload)

        path = request.url.path
        if "/vehicles/decodevin/" in path:
            vin = path.rsplit("/", 1)[-1]
            results = [{"Variable": k, "Value": v} for k, v in self.vins.get(vin, {}).items()]
            results.append({"Variable": "Suggested VIN", "Value": ""})
            results.append({"Variable": "Error Text", "Value": None})
        elif path.endswith("/vehicles/getallmakes"):
            results = [{"Make_ID": i, "Make_Name": name} for i, name in enumerate(self.makes, start=1)]
        elif "/vehicles/getmodelsformake/" in path:
            make = unquote(path.rsplit("/", 1)[-1]).upper()
            results = [
                {"Make_Name": make, "Model_ID": i, "Model_Name": name}
                for i, name in enumerate(self.models.get(make, []), start=100)
            ]
        else:
            return httpx.Response(404)

        return httpx.Response(200, json={"Count": len(results), "Message": "ok", "Results": results})

    def decode_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if "/decodevin/" in r.url.path]


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy control BEGIN so SAVEPOINT works on SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def registry_api():
    api = FakeRegistryAPI()
    api.vins[HONDA_VIN] = {
        "Make": "HONDA",
        "Model": "Accord",
        "Model Year": "2003",
        "Trim": "EX-V6",
        "Body Class": "Coupe",
        "Engine Configuration": "V-Shaped",
        "Transmission Style": "Automatic",
    }
    return api


@pytest.fixture
async def registry(registry_api, clock):
    client = RegistryClient(
        base_url="https://registry.test/api",
        max_attempts=1,
        retry_wait=0,
        clock=clock,
        transport=httpx.MockTransport(registry_api.handler),
    )
    yield client
    await client.aclose()


@pytest.fixture
async def auction(session):
    auction = models.Auction(name="Manheim Dallas", requires_vin=True, run_format="separate")
    session.add(auction)
    await session.commit()
    return auction
