"""Tests for repository connections and the codebase sync pipeline."""

import base64
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select, update

from product_kb.codebase import CodebaseSyncPipeline
from product_kb.codebase.provider import GitHubClient, SourceControlError, parse_repo_name
from product_kb.codebase.sync import ModuleDraft, architecture_document, fallback_summary
from product_kb.content.nodes import extract_text, parse_document
from product_kb.db.models import CodebaseConnection, CodebaseModule, EmbeddingChunk, utcnow
from product_kb.exceptions import NotFoundError, SyncConflictError

from tests.conftest import FakeLLM


async def _connect(resources, workspace_id: str = "ws-a") -> CodebaseConnection:
    return await resources.sync.connect(workspace_id, "https://github.com/acme/shop")


async def _set_syncing(session_factory, connection_id: str, minutes_ago: float) -> None:
    async with session_factory() as session:
        await session.execute(
            update(CodebaseConnection)
            .where(CodebaseConnection.id == connection_id)
            .values(status="syncing", updated_at=utcnow() - timedelta(minutes=minutes_ago))
        )
        await session.commit()


class InterruptingLLM(FakeLLM):
    """Runs ``on_first_prompt`` before answering its first generation request."""

    def __init__(self, on_first_prompt):
        super().__init__("Renders the main dashboard.")
        self.on_first_prompt = on_first_prompt

    async def generate(self, prompt, system=None, max_tokens=None, **kwargs) -> str:
        if not self.prompts:
            await self.on_first_prompt()
        return await super().generate(prompt, system=system, max_tokens=max_tokens, **kwargs)


async def _module_chunk_count(session_factory, workspace_id: str) -> int:
    async with session_factory() as session:
        return await session.scalar(
            select(func.count())
            .select_from(EmbeddingChunk)
            .where(
                EmbeddingChunk.workspace_id == workspace_id,
                EmbeddingChunk.source_type == "codebase_module",
            )
        )


class TestConnections:
    """Tests for connection management."""

    @pytest.mark.asyncio
    async def test_connect_starts_pending(self, resources):
        connection = await _connect(resources)

        assert connection.status == "pending"
        assert connection.repo_name == "acme/shop"
        assert connection.default_branch == "main"
        assert [c.id for c in await resources.sync.list_connections("ws-a")] == [connection.id]
        assert await resources.sync.list_connections("ws-b") == []

    @pytest.mark.asyncio
    async def test_invalid_url(self, resources):
        with pytest.raises(ValueError):
            await resources.sync.connect("ws-a", "https://github.com/")

    @pytest.mark.asyncio
    async def test_other_workspace_cannot_see_connection(self, resources):
        connection = await _connect(resources)
        with pytest.raises(NotFoundError):
            await resources.sync.get_connection(connection.id, "ws-b")
        with pytest.raises(NotFoundError):
            await resources.sync.request_resync(connection.id, "ws-b")

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://github.com/acme/shop", "acme/shop"),
            ("https://github.com/acme/shop.git", "acme/shop"),
            ("git@github.com:acme/shop.git", "acme/shop"),
            ("acme/shop/", "acme/shop"),
            ("https://github.com/acme/shop/tree/main", "acme/shop"),
        ],
    )
    def test_parse_repo_name(self, url, expected):
        assert parse_repo_name(url) == expected


class TestSyncPipeline:
    """Tests for sync runs."""

    @pytest.mark.asyncio
    async def test_sync_to_ready(self, resources, session_factory):
        """Supported files become modules; vendored and non-source files are skipped."""
        connection = await _connect(resources)

        synced = await resources.sync.sync_repository(connection.id, "ws-a", credentials="ghp_x")

        assert synced.status == "ready"
        assert synced.file_count == 2
        assert synced.module_count == 2
        assert synced.last_synced_at is not None
        assert synced.error_message is None

        modules = await resources.sync.list_modules(connection.id, "ws-a")
        assert [m.file_path for m in modules] == ["src/components/Dashboard.tsx", "src/services/auth.py"]
        dashboard, auth = modules
        assert dashboard.module_type == "component"
        assert dashboard.language == "typescript"
        assert dashboard.exports == ["Dashboard", "DASHBOARD_REFRESH"]
        assert dashboard.dependencies == ["useState from react"]
        assert auth.module_type == "service"
        assert auth.exports == ["SsoService", "login"]
        assert auth.parsed_structure["functions"] == ["login", "_hash"]
        assert auth.summary == fallback_summary(auth)
        assert await _module_chunk_count(session_factory, "ws-a") == 2

    @pytest.mark.asyncio
    async def test_modules_are_searchable(self, resources):
        connection = await _connect(resources)
        await resources.sync.sync_repository(connection.id, "ws-a")

        results = await resources.search.search("dashboard", "ws-a", source_types=["codebase_module"])

        assert results[0].metadata["file_path"] == "src/components/Dashboard.tsx"

    @pytest.mark.asyncio
    async def test_provider_failure_marks_error(self, resources, fake_repo):
        connection = await _connect(resources)
        fake_repo.fail = True

        with pytest.raises(SourceControlError):
            await resources.sync.sync_repository(connection.id, "ws-a")

        failed = await resources.sync.get_connection(connection.id, "ws-a")
        assert failed.status == "error"
        assert failed.error_message == "GitHub rejected the access token"

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_modules(self, resources, fake_repo):
        connection = await _connect(resources)
        await resources.sync.sync_repository(connection.id, "ws-a")
        fake_repo.fail = True

        with pytest.raises(SourceControlError):
            await resources.sync.sync_repository(connection.id, "ws-a")

        assert len(await resources.sync.list_modules(connection.id, "ws-a")) == 2

    @pytest.mark.asyncio
    async def test_resync_replaces_modules(self, resources, fake_repo, session_factory):
        connection = await _connect(resources)
        await resources.sync.sync_repository(connection.id, "ws-a")
        del fake_repo.files["src/services/auth.py"]

        synced = await resources.sync.sync_repository(connection.id, "ws-a")

        assert synced.module_count == 1
        modules = await resources.sync.list_modules(connection.id, "ws-a")
        assert [m.file_path for m in modules] == ["src/components/Dashboard.tsx"]
        assert await _module_chunk_count(session_factory, "ws-a") == 1

    @pytest.mark.asyncio
    async def test_missing_file_is_skipped(self, resources, fake_repo):
        """A file listed but gone by fetch time is skipped, not fatal."""
        connection = await _connect(resources)
        original_fetch = fake_repo.fetch_file

        async def flaky_fetch(repo, path, ref=None):
            if path.endswith("auth.py"):
                raise SourceControlError("Repository or path not found", status_code=404)
            return await original_fetch(repo, path, ref)

        fake_repo.fetch_file = flaky_fetch
        synced = await resources.sync.sync_repository(connection.id, "ws-a")

        assert synced.status == "ready"
        assert synced.file_count == 2
        assert synced.module_count == 1

    @pytest.mark.asyncio
    async def test_running_sync_conflicts(self, resources, session_factory):
        connection = await _connect(resources)
        await _set_syncing(session_factory, connection.id, minutes_ago=1)

        with pytest.raises(SyncConflictError):
            await resources.sync.request_resync(connection.id, "ws-a")

    @pytest.mark.asyncio
    async def test_stale_sync_is_taken_over(self, resources, session_factory):
        connection = await _connect(resources)
        await _set_syncing(session_factory, connection.id, minutes_ago=10)

        syncing = await resources.sync.request_resync(connection.id, "ws-a")
        assert syncing.status == "syncing"

        await resources.jobs.wait(f"sync:{connection.id}")
        ready = await resources.sync.get_connection(connection.id, "ws-a")
        assert ready.status == "ready"

    @pytest.mark.asyncio
    async def test_superseded_run_writes_nothing(self, resources, session_factory):
        connection = await _connect(resources)
        old_run = await resources.sync._begin_run(connection.id, "ws-a")
        await _set_syncing(session_factory, connection.id, minutes_ago=10)
        new_run = await resources.sync._begin_run(connection.id, "ws-a")

        await resources.sync.run_sync(connection.id, "ws-a", old_run)

        current = await resources.sync.get_connection(connection.id, "ws-a")
        assert current.status == "syncing"
        assert current.sync_run_id == new_run
        assert await resources.sync.list_modules(connection.id, "ws-a") == []

        await resources.sync.run_sync(connection.id, "ws-a", new_run)
        assert (await resources.sync.get_connection(connection.id, "ws-a")).status == "ready"

    @pytest.mark.asyncio
    async def test_disconnect_removes_modules(self, resources, session_factory):
        connection = await _connect(resources)
        await resources.sync.sync_repository(connection.id, "ws-a")

        await resources.sync.disconnect(connection.id, "ws-a")

        with pytest.raises(NotFoundError):
            await resources.sync.get_connection(connection.id, "ws-a")
        async with session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(CodebaseModule)) == 0
        assert await _module_chunk_count(session_factory, "ws-a") == 0

    @pytest.mark.asyncio
    async def test_architecture_summary_artifact(self, resources):
        connection = await _connect(resources)
        await resources.sync.sync_repository(connection.id, "ws-a")
        await resources.sync.sync_repository(connection.id, "ws-a")

        artifacts = await resources.artifacts.list_artifacts("ws-a", type="architecture_summary")

        assert [a.title for a in artifacts] == ["Architecture: acme/shop"]
        text = extract_text(parse_document(artifacts[0].content))
        assert "src/components/Dashboard.tsx" in text
        assert artifacts[0].status == "active"

    @pytest.mark.asyncio
    async def test_generated_summaries(self, resources, fake_repo, session_factory):
        llm = FakeLLM("Renders the main dashboard.")
        pipeline = CodebaseSyncPipeline(
            session_factory, resources.store, llm, resources.jobs, lambda token: fake_repo
        )
        connection = await pipeline.connect("ws-a", "acme/shop")

        await pipeline.sync_repository(connection.id, "ws-a")

        modules = await pipeline.list_modules(connection.id, "ws-a")
        assert {m.summary for m in modules} == {"Renders the main dashboard."}
        assert any("File: src/components/Dashboard.tsx" in p for p in llm.prompts)

    @pytest.mark.asyncio
    async def test_failed_generation_uses_fallback(self, resources, fake_repo, session_factory):
        pipeline = CodebaseSyncPipeline(
            session_factory, resources.store, FakeLLM(fail=True), resources.jobs, lambda token: fake_repo
        )
        connection = await pipeline.connect("ws-a", "acme/shop")

        synced = await pipeline.sync_repository(connection.id, "ws-a")

        assert synced.status == "ready"
        modules = await pipeline.list_modules(connection.id, "ws-a")
        assert all(m.summary == fallback_summary(m) for m in modules)

    @pytest.mark.asyncio
    async def test_superseded_between_summary_batches_stops(self, resources, fake_repo, session_factory):
        """A run taken over while summarizing makes no further generation calls."""
        new_runs = []

        async def take_over():
            await _set_syncing(session_factory, connection.id, minutes_ago=10)
            new_runs.append(await pipeline._begin_run(connection.id, "ws-a"))

        llm = InterruptingLLM(take_over)
        pipeline = CodebaseSyncPipeline(
            session_factory, resources.store, llm, resources.jobs, lambda token: fake_repo, batch_size=1
        )
        connection = await pipeline.connect("ws-a", "acme/shop")
        old_run = await pipeline._begin_run(connection.id, "ws-a")

        await pipeline.run_sync(connection.id, "ws-a", old_run)

        assert len(llm.prompts) == 1
        current = await pipeline.get_connection(connection.id, "ws-a")
        assert current.sync_run_id == new_runs[0]
        assert await pipeline.list_modules(connection.id, "ws-a") == []


def test_architecture_document_is_valid():
    module = CodebaseModule(
        file_path="src/services/auth.py", module_type="service", language="python", exports=["login"]
    )
    doc = architecture_document("acme/shop", [ModuleDraft(module)], overview="Two areas.\n\nAuth and UI.")

    assert parse_document(doc.to_dict()) == doc
    text = extract_text(doc)
    assert "Architecture: acme/shop" in text
    assert "Auth and UI." in text
    assert "src/services/auth.py: Python service at src/services/auth.py. Exports login." in text


class TestGitHubClient:
    """Tests for the GitHub provider over a mocked transport."""

    @pytest.mark.asyncio
    async def test_list_and_fetch(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer ghp_test"
            if "/git/trees/" in request.url.path:
                assert request.url.params["recursive"] == "1"
                return httpx.Response(
                    200,
                    json={
                        "tree": [
                            {"path": "src", "type": "tree"},
                            {"path": "src/app.ts", "type": "blob", "size": 12},
                        ]
                    },
                )
            return httpx.Response(
                200, json={"encoding": "base64", "content": base64.b64encode(b"export {}").decode()}
            )

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        github = GitHubClient(token="ghp_test", client=client)

        files = await github.list_files("acme/shop", "main")
        assert [(f.path, f.size) for f in files] == [("src/app.ts", 12)]
        assert await github.fetch_file("acme/shop", "src/app.ts", ref="main") == b"export {}"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 404, 422])
    async def test_client_errors_not_retried(self, status):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(status, text="nope")

        github = GitHubClient(token="t", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        with pytest.raises(SourceControlError) as exc_info:
            await github.list_files("acme/shop", "main")
        assert exc_info.value.status_code == status
        assert len(calls) == 1
