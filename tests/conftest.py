"""Shared fixtures: a fresh SQLite database per test and deterministic providers."""

import asyncio
import re
from contextlib import asynccontextmanager

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from product_kb.codebase.provider import RepoFile, SourceControlError, SourceControlProvider
from product_kb.db.database import create_engine, init_db
from product_kb.main import create_app
from product_kb.rag.exceptions import LLMConnectionError
from product_kb.rag.llm import BaseLLM
from product_kb.resources import Resources
from product_kb.vectorstore.embeddings import BaseEmbeddings
from product_kb.vectorstore.exceptions import EmbeddingTransientError

# Each keyword group is one axis of the fake embedding space
KEYWORD_AXES = (
    {"dashboard", "slow", "load", "loads", "loading", "forever", "performance", "lag"},
    {"sso", "saml", "enterprise", "login", "okta"},
    {"export", "csv", "report", "reports", "download"},
    {"billing", "invoice", "invoices", "payment", "pricing"},
    {"mobile", "ios", "android", "app"},
    {"search", "filter", "query"},
    {"component", "service", "function", "route", "module", "exports"},
)
DIMENSION = len(KEYWORD_AXES) + 1


def keyword_vector(text: str) -> list[float]:
    """Counts of keyword hits per axis; text without keywords lands on the last axis."""
    words = re.findall(r"[a-z]+", text.lower())
    vector = [float(sum(1 for w in words if w in axis)) for axis in KEYWORD_AXES]
    vector.append(0.0 if any(vector) else 1.0)
    return vector


class FakeEmbeddings(BaseEmbeddings):
    """Deterministic keyword-axis embeddings.

    ``failures`` makes the next N calls raise a transient error.
    """

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls: list[list[str]] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    @property
    def dimension(self) -> int:
        return DIMENSION

    async def embed(self, texts: list[str], **kwargs) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.failures > 0:
            self.failures -= 1
            raise EmbeddingTransientError("simulated outage", provider="fake")
        return [keyword_vector(t) for t in texts]


class GatedEmbeddings(FakeEmbeddings):
    """Keyword embeddings that hold texts containing ``hold`` until ``gate`` is set.

    ``entered`` is set once a held text is waiting.
    """

    def __init__(self, hold: str):
        super().__init__()
        self.hold = hold.lower()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def embed(self, texts: list[str], **kwargs) -> list[list[float]]:
        if any(self.hold in t.lower() for t in texts):
            self.entered.set()
            await self.gate.wait()
        return await super().embed(texts, **kwargs)


class FakeLLM(BaseLLM):
    """Text generator returning a fixed reply, or failing when ``fail`` is set."""

    def __init__(self, reply: str = "Handles a part of the product.", fail: bool = False):
        self.reply = reply
        self.fail = fail
        self.prompts: list[str] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    async def generate(self, prompt, system=None, max_tokens=None, **kwargs) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise LLMConnectionError("simulated outage", provider="fake")
        return self.reply

    async def check_health(self) -> bool:
        return not self.fail


class FakeRepository(SourceControlProvider):
    """In-memory repository; ``fail`` makes listing raise."""

    def __init__(self, files: dict[str, str] | None = None, fail: bool = False):
        self.files = files or {}
        self.fail = fail
        self.tokens: list[str | None] = []

    async def list_files(self, repo: str, branch: str) -> list[RepoFile]:
        if self.fail:
            raise SourceControlError("GitHub rejected the access token", status_code=401)
        return [RepoFile(path=p, size=len(c.encode())) for p, c in self.files.items()]

    async def fetch_file(self, repo: str, path: str, ref: str | None = None) -> bytes:
        if path not in self.files:
            raise SourceControlError(f"Repository or path not found: {path}", status_code=404)
        return self.files[path].encode()


SAMPLE_REPO = {
    "src/components/Dashboard.tsx": (
        "import { useState } from 'react'\n"
        "export function Dashboard() { return null }\n"
        "export const DASHBOARD_REFRESH = 30\n"
    ),
    "src/services/auth.py": (
        "from fastapi import APIRouter\n"
        "class SsoService:\n"
        "    pass\n"
        "def login(user):\n"
        "    return user\n"
        "def _hash(value):\n"
        "    return value\n"
    ),
    "node_modules/react/index.js": "export default {}\n",
    "README.md": "# Sample\n",
}


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite engine with all tables created; one per test."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddings()


@pytest.fixture
def fake_repo():
    return FakeRepository(dict(SAMPLE_REPO))


@pytest_asyncio.fixture
async def resources(engine, fake_embeddings, fake_repo):
    """Full service graph on the test database, without text generation."""
    http_client = httpx.AsyncClient()
    resources = Resources(
        engine,
        http_client,
        fake_embeddings,
        llm=None,
        provider_factory=lambda token: fake_repo,
    )
    yield resources
    await resources.jobs.aclose(timeout=5)
    await http_client.aclose()


@pytest.fixture
def session_factory(resources):
    return resources.session_factory


@asynccontextmanager
async def _no_lifespan(app):
    yield


@pytest_asyncio.fixture
async def client(resources):
    """API client on the test resources; the real lifespan is not run."""
    app = create_app(lifespan_handler=_no_lifespan)
    app.state.resources = resources
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
