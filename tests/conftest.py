"""Shared test fixtures."""

from __future__ import annotations

import os
import tempfile
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from helpers import ADMIN_KEY, PAYEE, SERVICE_KEY, ChainStub


def _ensure_test_keys() -> None:
    """Generate an RSA key pair for JWT signing and point settings at it."""
    if os.environ.get("GATHER_JWT_PRIVATE_KEY_PATH"):
        return
    tmpdir = Path(tempfile.mkdtemp(prefix="gather_test_keys_"))
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_path = tmpdir / "jwt_private.pem"
    public_path = tmpdir / "jwt_public.pem"
    private_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    public_path.write_bytes(key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ))
    os.environ["GATHER_JWT_PRIVATE_KEY_PATH"] = str(private_path)
    os.environ["GATHER_JWT_PUBLIC_KEY_PATH"] = str(public_path)


# Settings are read at import time by gather.main; configure them first.
_ensure_test_keys()
os.environ["GATHER_SERVICE_API_KEY"] = SERVICE_KEY
os.environ["GATHER_ADMIN_API_KEY"] = ADMIN_KEY
os.environ["GATHER_PAYEE_ADDRESS"] = PAYEE
os.environ["GATHER_LOG_FORMAT"] = "console"
os.environ["GATHER_IDENTITY_PROVIDER_URL"] = ""

from gather.config import get_settings  # noqa: E402

get_settings.cache_clear()

from gather.auth.jwt import create_access_token, reset_keys  # noqa: E402
from gather.database import close_db, get_engine, get_session_factory, init_db  # noqa: E402
from gather.db.base import Base  # noqa: E402
from gather.db import models  # noqa: E402, F401
from gather.dependencies import get_chain  # noqa: E402
from gather.identity.resolver import IdentityResolver, ResolveHints  # noqa: E402
from gather.main import create_app  # noqa: E402
from gather.payments.chain import ChainClient  # noqa: E402
from gather.agents.seed import seed_skills, seed_slots  # noqa: E402
from gather.tasks.queue import InlineTaskQueue, set_task_queue  # noqa: E402

reset_keys()


# --- Chain RPC fake ---


@pytest.fixture
def chain_stub() -> ChainStub:
    return ChainStub()


@pytest.fixture
def chain(chain_stub: ChainStub) -> ChainClient:
    return chain_stub.client()


# --- Database ---


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[None, None]:
    """Fresh SQLite file database with every table created."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'gather.db'}")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()


@pytest_asyncio.fixture
async def db_session(database: None) -> AsyncGenerator[Any, None]:
    """A direct database session for service-level tests and assertions."""
    async with get_session_factory()() as session:
        yield session


@pytest_asyncio.fixture
async def task_queue(database: None, chain: ChainClient) -> AsyncGenerator[InlineTaskQueue, None]:
    """Eager in-process queue: jobs finish before ``enqueue`` returns."""
    queue = InlineTaskQueue(ctx={"chain": chain, "settings": get_settings(), "provider": None}, eager=True)
    set_task_queue(queue)
    yield queue
    set_task_queue(None)


# --- API ---


@pytest_asyncio.fixture
async def client(database: None, task_queue: InlineTaskQueue, chain: ChainClient) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client over the ASGI app, without Redis."""
    settings = get_settings()
    async with get_session_factory()() as db:
        await seed_slots(db, settings.agent_slot_count, settings.agent_reserved_slots)
        await seed_skills(db)

    app = create_app()
    app.dependency_overrides[get_chain] = lambda: chain
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def login_as(database: None) -> Callable[..., Any]:
    """Resolve an identity and return bearer headers for it."""

    async def _login(platform: str, native_id: str, **hints: Any) -> dict[str, str]:
        platform_user_id = f"{platform}_{native_id}"
        async with get_session_factory()() as db:
            canonical_id = await IdentityResolver(db).resolve(platform_user_id, ResolveHints(**hints))
        token = create_access_token(platform_user_id, platform, canonical_id)
        return {"Authorization": f"Bearer {token}"}

    return _login


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def service_headers() -> dict[str, str]:
    return {"X-Service-Key": SERVICE_KEY}
