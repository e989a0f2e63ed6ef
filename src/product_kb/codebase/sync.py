"""Codebase sync pipeline: mirror a repository into searchable modules.

A connection moves ``pending -> syncing -> ready | error``. Starting a run
is a single conditional UPDATE that also stamps a fresh ``sync_run_id``;
every later write of the run is conditioned on that id, so a run that was
taken over after going stale can no longer touch the connection.

The module set is replaced in one transaction at the end of a run. A run
that fails before that point leaves the previous modules in place.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from product_kb.codebase.parser import (
    detect_language,
    detect_module_type,
    module_name_from_path,
    parse_file,
    should_include_file,
)
from product_kb.codebase.provider import (
    GitHubClient,
    RepoFile,
    SourceControlError,
    SourceControlProvider,
    parse_repo_name,
)
from product_kb.config import settings
from product_kb.content.nodes import DocNode, NodeKind
from product_kb.db.database import SessionFactory
from product_kb.db.models import (
    Artifact,
    ArtifactStatus,
    ArtifactType,
    CodebaseConnection,
    CodebaseModule,
    ConnectionStatus,
    EmbeddingChunk,
    Link,
    SourceType,
    new_id,
    utcnow,
)
from product_kb.exceptions import NotFoundError, SyncConflictError, SyncSupersededError
from product_kb.jobs import JobRunner
from product_kb.rag.exceptions import LLMError
from product_kb.rag.llm import BaseLLM
from product_kb.vectorstore.indexer import SourceIndexer, module_embedding_text, source_metadata
from product_kb.vectorstore.store import EmbeddingStore, PreparedChunk

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str | None], SourceControlProvider]

SUMMARY_SYSTEM = (
    "You are a senior engineer documenting a codebase for product managers. "
    "Summarize what the file does in 1-2 plain sentences. Mention the user-facing "
    "capability it supports when there is one. Do not describe syntax."
)

ARCHITECTURE_SYSTEM = (
    "You are a senior engineer. Given module summaries grouped by kind, write a short "
    "architecture overview (2-3 paragraphs) for product managers: main areas, how they "
    "fit together, and where user-facing features live."
)


@dataclass
class ModuleDraft:
    """A parsed module waiting for its summary and embedding."""

    module: CodebaseModule
    chunks: list[PreparedChunk] = field(default_factory=list)


def fallback_summary(module: CodebaseModule) -> str:
    """Deterministic summary from path, kind and exported names."""
    kind = module.module_type or "module"
    language = (module.language or "source").capitalize()
    summary = f"{language} {kind} at {module.file_path}."
    if module.exports:
        shown = ", ".join(module.exports[:10])
        more = f" and {len(module.exports) - 10} more" if len(module.exports) > 10 else ""
        summary += f" Exports {shown}{more}."
    return summary


def github_provider_factory(client=None) -> ProviderFactory:
    """Provider factory building GitHub clients on a shared HTTP client."""

    def factory(token: str | None) -> SourceControlProvider:
        return GitHubClient(token=token, client=client)

    return factory


class CodebaseSyncPipeline:
    """Connects repositories and keeps their module index up to date."""

    def __init__(
        self,
        session_factory: SessionFactory,
        store: EmbeddingStore,
        llm: BaseLLM | None,
        jobs: JobRunner,
        provider_factory: ProviderFactory,
        batch_size: int | None = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.indexer = SourceIndexer(session_factory, store)
        self.llm = llm
        self.jobs = jobs
        self.provider_factory = provider_factory
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE

    # Connection management

    async def connect(
        self,
        workspace_id: str,
        repo_url: str,
        repo_name: str | None = None,
        default_branch: str = "main",
    ) -> CodebaseConnection:
        """Register a repository; the connection starts ``pending``.

        Raises:
            ValueError: If no repository name can be derived from the URL
        """
        connection = CodebaseConnection(
            workspace_id=workspace_id,
            repo_url=repo_url,
            repo_name=repo_name or parse_repo_name(repo_url),
            default_branch=default_branch,
            status=ConnectionStatus.PENDING.value,
        )
        async with self.session_factory() as session:
            session.add(connection)
            await session.commit()
        logger.info(f"Connected repository {connection.repo_name} to workspace {workspace_id}")
        return connection

    async def get_connection(self, connection_id: str, workspace_id: str) -> CodebaseConnection:
        async with self.session_factory() as session:
            connection = await session.scalar(
                select(CodebaseConnection).where(
                    CodebaseConnection.id == connection_id,
                    CodebaseConnection.workspace_id == workspace_id,
                )
            )
        if connection is None:
            raise NotFoundError("codebase_connection", connection_id)
        return connection

    async def list_connections(self, workspace_id: str) -> list[CodebaseConnection]:
        async with self.session_factory() as session:
            rows = await session.scalars(
                select(CodebaseConnection)
                .where(CodebaseConnection.workspace_id == workspace_id)
                .order_by(CodebaseConnection.created_at)
            )
            return list(rows.all())

    async def list_modules(self, connection_id: str, workspace_id: str) -> list[CodebaseModule]:
        async with self.session_factory() as session:
            rows = await session.scalars(
                select(CodebaseModule)
                .where(
                    CodebaseModule.connection_id == connection_id,
                    CodebaseModule.workspace_id == workspace_id,
                )
                .order_by(CodebaseModule.file_path)
            )
            return list(rows.all())

    async def disconnect(self, connection_id: str, workspace_id: str) -> None:
        """Delete a connection with its modules, their chunks and links."""
        await self.get_connection(connection_id, workspace_id)
        async with self.session_factory() as session:
            await self._delete_modules(session, connection_id, workspace_id)
            await session.execute(
                delete(CodebaseConnection).where(
                    CodebaseConnection.id == connection_id,
                    CodebaseConnection.workspace_id == workspace_id,
                )
            )
            await session.commit()
        logger.info(f"Disconnected codebase connection {connection_id}")

    # Sync runs

    async def _begin_run(self, connection_id: str, workspace_id: str) -> str:
        """Move the connection to ``syncing`` under a new run id.

        Raises:
            NotFoundError: If the connection is not in the workspace
            SyncConflictError: If a non-stale run is already syncing
        """
        now = utcnow()
        stale_before = now - timedelta(minutes=settings.SYNC_STALE_MINUTES)
        run_id = new_id()

        async with self.session_factory() as session:
            result = await session.execute(
                update(CodebaseConnection)
                .where(
                    CodebaseConnection.id == connection_id,
                    CodebaseConnection.workspace_id == workspace_id,
                    or_(
                        CodebaseConnection.status != ConnectionStatus.SYNCING.value,
                        CodebaseConnection.updated_at < stale_before,
                    ),
                )
                .values(
                    status=ConnectionStatus.SYNCING.value,
                    sync_run_id=run_id,
                    error_message=None,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                await self.get_connection(connection_id, workspace_id)
                raise SyncConflictError(connection_id)
            await session.commit()

        logger.info(f"Started sync run {run_id} for connection {connection_id}")
        return run_id

    async def request_resync(
        self, connection_id: str, workspace_id: str, credentials: str | None = None
    ) -> CodebaseConnection:
        """Start a sync in the background and return the ``syncing`` connection."""
        run_id = await self._begin_run(connection_id, workspace_id)
        self.jobs.start(
            f"sync:{connection_id}",
            self.run_sync(connection_id, workspace_id, run_id, credentials),
        )
        return await self.get_connection(connection_id, workspace_id)

    async def sync_repository(
        self, connection_id: str, workspace_id: str, credentials: str | None = None
    ) -> CodebaseConnection:
        """Run a sync to completion in the caller's task."""
        run_id = await self._begin_run(connection_id, workspace_id)
        await self.run_sync(connection_id, workspace_id, run_id, credentials)
        return await self.get_connection(connection_id, workspace_id)

    async def run_sync(
        self,
        connection_id: str,
        workspace_id: str,
        run_id: str,
        credentials: str | None = None,
    ) -> None:
        """Fetch, parse, summarize and embed the repository, then swap modules in."""
        try:
            connection = await self.get_connection(connection_id, workspace_id)
            provider = self.provider_factory(credentials)

            files = await provider.list_files(connection.repo_name, connection.default_branch)
            selected = [
                f for f in files
                if should_include_file(f.path, f.size, settings.SYNC_MAX_FILE_BYTES)
            ]
            logger.info(
                f"Syncing {connection.repo_name}: {len(selected)} of {len(files)} files selected"
            )

            drafts: list[ModuleDraft] = []
            for start in range(0, len(selected), self.batch_size):
                batch = selected[start:start + self.batch_size]
                results = await asyncio.gather(
                    *(self._fetch_module(provider, connection, repo_file) for repo_file in batch)
                )
                drafts.extend(d for d in results if d is not None)
                await self._heartbeat(connection_id, run_id)

            await self._summarize(drafts, connection_id, run_id)

            for start in range(0, len(drafts), self.batch_size):
                batch = drafts[start:start + self.batch_size]
                prepared = await asyncio.gather(
                    *(
                        self.store.prepare_chunks(
                            module_embedding_text(d.module), source_metadata(d.module)
                        )
                        for d in batch
                    )
                )
                for draft, chunks in zip(batch, prepared):
                    draft.chunks = chunks
                await self._heartbeat(connection_id, run_id)

            await self._swap(connection, run_id, len(selected), drafts)
        except SyncSupersededError:
            logger.info(f"Sync run {run_id} for {connection_id} was superseded, stopping")
            return
        except Exception as e:
            await self._mark_error(connection_id, run_id, str(e) or type(e).__name__)
            raise

        await self._write_architecture_summary(connection, drafts)

    async def _fetch_module(
        self,
        provider: SourceControlProvider,
        connection: CodebaseConnection,
        repo_file: RepoFile,
    ) -> ModuleDraft | None:
        try:
            raw = await provider.fetch_file(
                connection.repo_name, repo_file.path, ref=connection.default_branch
            )
        except SourceControlError as e:
            if e.status_code != 404:
                raise
            logger.warning(f"Skipping {repo_file.path}: {e}")
            return None

        content = raw.decode("utf-8", errors="replace")
        language = detect_language(repo_file.path)
        parsed = parse_file(content, language)
        module = CodebaseModule(
            id=new_id(),
            workspace_id=connection.workspace_id,
            connection_id=connection.id,
            file_path=repo_file.path,
            module_name=module_name_from_path(repo_file.path),
            module_type=detect_module_type(repo_file.path),
            language=language,
            dependencies=parsed.imports,
            exports=parsed.exports,
            raw_content=content,
            parsed_structure=parsed.structure(),
        )
        return ModuleDraft(module=module)

    async def _summarize(self, drafts: list[ModuleDraft], connection_id: str, run_id: str) -> None:
        if self.llm is None:
            for draft in drafts:
                draft.module.summary = fallback_summary(draft.module)
            await self._heartbeat(connection_id, run_id)
            return

        failures = 0
        for start in range(0, len(drafts), self.batch_size):
            batch = drafts[start:start + self.batch_size]
            summaries = await asyncio.gather(*(self._summarize_one(d.module) for d in batch))
            for draft, summary in zip(batch, summaries):
                if summary is None:
                    failures += 1
                    summary = fallback_summary(draft.module)
                draft.module.summary = summary
            await self._heartbeat(connection_id, run_id)

        if failures:
            logger.warning(f"Used fallback summaries for {failures}/{len(drafts)} modules")

    async def _summarize_one(self, module: CodebaseModule) -> str | None:
        prompt = (
            f"File: {module.file_path}\n"
            f"Language: {module.language}\n"
            f"Exports: {', '.join(module.exports) or 'none'}\n\n"
            f"{(module.raw_content or '')[:settings.SYNC_SUMMARY_CHARS]}"
        )
        try:
            summary = await self.llm.generate(prompt, system=SUMMARY_SYSTEM, max_tokens=200)
        except LLMError as e:
            logger.debug(f"Summary failed for {module.file_path}: {e}")
            return None
        return summary.strip() or None

    async def _heartbeat(self, connection_id: str, run_id: str) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                update(CodebaseConnection)
                .where(
                    CodebaseConnection.id == connection_id,
                    CodebaseConnection.sync_run_id == run_id,
                )
                .values(updated_at=utcnow())
            )
            await session.commit()
        if result.rowcount == 0:
            raise SyncSupersededError(connection_id, run_id)

    @staticmethod
    async def _delete_modules(session: AsyncSession, connection_id: str, workspace_id: str) -> None:
        module_ids = list(
            (
                await session.scalars(
                    select(CodebaseModule.id).where(
                        CodebaseModule.connection_id == connection_id,
                        CodebaseModule.workspace_id == workspace_id,
                    )
                )
            ).all()
        )
        if not module_ids:
            return
        await session.execute(
            delete(EmbeddingChunk).where(
                EmbeddingChunk.workspace_id == workspace_id,
                EmbeddingChunk.source_type == SourceType.CODEBASE_MODULE.value,
                EmbeddingChunk.source_id.in_(module_ids),
            )
        )
        await session.execute(
            delete(Link).where(
                Link.workspace_id == workspace_id,
                or_(Link.source_id.in_(module_ids), Link.target_id.in_(module_ids)),
            )
        )
        await session.execute(
            delete(CodebaseModule).where(CodebaseModule.id.in_(module_ids))
        )

    async def _swap(
        self,
        connection: CodebaseConnection,
        run_id: str,
        file_count: int,
        drafts: list[ModuleDraft],
    ) -> None:
        """Replace the module set and mark the connection ready, atomically."""
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(CodebaseConnection)
                .where(
                    CodebaseConnection.id == connection.id,
                    CodebaseConnection.sync_run_id == run_id,
                )
                .values(
                    status=ConnectionStatus.READY.value,
                    file_count=file_count,
                    module_count=len(drafts),
                    last_synced_at=now,
                    error_message=None,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                raise SyncSupersededError(connection.id, run_id)

            await self._delete_modules(session, connection.id, connection.workspace_id)
            session.add_all(d.module for d in drafts)
            await session.flush()
            for draft in drafts:
                await self.store.replace_chunks(
                    session,
                    connection.workspace_id,
                    SourceType.CODEBASE_MODULE.value,
                    draft.module.id,
                    draft.chunks,
                )
            await session.commit()

        logger.info(f"Sync run {run_id} finished: {len(drafts)} modules for {connection.repo_name}")

    async def _mark_error(self, connection_id: str, run_id: str, message: str) -> None:
        logger.error(f"Sync run {run_id} for connection {connection_id} failed: {message}")
        async with self.session_factory() as session:
            await session.execute(
                update(CodebaseConnection)
                .where(
                    CodebaseConnection.id == connection_id,
                    CodebaseConnection.sync_run_id == run_id,
                )
                .values(
                    status=ConnectionStatus.ERROR.value,
                    error_message=message[:1000],
                    updated_at=utcnow(),
                )
            )
            await session.commit()

    # Architecture summary

    async def _write_architecture_summary(
        self, connection: CodebaseConnection, drafts: list[ModuleDraft]
    ) -> None:
        """Create or refresh the repository's architecture-summary artifact.

        Failures are logged; the sync itself has already succeeded.
        """
        if not drafts:
            return

        overview = None
        if self.llm is not None:
            try:
                overview = await self.llm.generate(
                    architecture_outline(drafts), system=ARCHITECTURE_SYSTEM, max_tokens=800
                )
            except LLMError as e:
                logger.warning(f"Architecture overview failed for {connection.repo_name}: {e}")

        doc = architecture_document(connection.repo_name, drafts, overview)
        title = f"Architecture: {connection.repo_name}"
        try:
            async with self.session_factory() as session:
                artifact = await session.scalar(
                    select(Artifact).where(
                        Artifact.workspace_id == connection.workspace_id,
                        Artifact.type == ArtifactType.ARCHITECTURE_SUMMARY.value,
                        Artifact.title == title,
                    )
                )
                if artifact is None:
                    artifact = Artifact(
                        workspace_id=connection.workspace_id,
                        type=ArtifactType.ARCHITECTURE_SUMMARY.value,
                        title=title,
                        status=ArtifactStatus.ACTIVE.value,
                    )
                    session.add(artifact)
                artifact.content = doc.to_dict()
                await session.commit()

            await self.indexer.index(SourceType.ARTIFACT.value, artifact.id, connection.workspace_id)
        except NotFoundError:
            logger.info(f"Architecture summary for {connection.repo_name} was deleted before indexing")
        except SQLAlchemyError as e:
            logger.warning(f"Could not store architecture summary for {connection.repo_name}: {e}")


def _group_by_kind(drafts: list[ModuleDraft]) -> dict[str, list[CodebaseModule]]:
    groups: dict[str, list[CodebaseModule]] = {}
    for draft in drafts:
        groups.setdefault(draft.module.module_type or "other", []).append(draft.module)
    return dict(sorted(groups.items()))


def architecture_outline(drafts: list[ModuleDraft], per_kind: int = 15) -> str:
    lines = []
    for kind, modules in _group_by_kind(drafts).items():
        lines.append(f"{kind} ({len(modules)} files):")
        for module in modules[:per_kind]:
            lines.append(f"  - {module.file_path}: {module.summary}")
    return "\n".join(lines)


def _text(text: str) -> DocNode:
    return DocNode(type=NodeKind.TEXT, text=text)


def architecture_document(
    repo_name: str, drafts: list[ModuleDraft], overview: str | None = None
) -> DocNode:
    """Document with an optional overview and one section per module kind."""
    blocks: list[DocNode] = [
        DocNode(type=NodeKind.HEADING, attrs={"level": 1}, content=[_text(f"Architecture: {repo_name}")])
    ]
    if overview and overview.strip():
        for paragraph in overview.strip().split("\n\n"):
            if paragraph.strip():
                blocks.append(DocNode(type=NodeKind.PARAGRAPH, content=[_text(paragraph.strip())]))

    for kind, modules in _group_by_kind(drafts).items():
        blocks.append(
            DocNode(type=NodeKind.HEADING, attrs={"level": 2}, content=[_text(kind.capitalize())])
        )
        items = [
            DocNode(
                type=NodeKind.LIST_ITEM,
                content=[
                    DocNode(
                        type=NodeKind.PARAGRAPH,
                        content=[_text(f"{m.file_path}: {m.summary or fallback_summary(m)}")],
                    )
                ],
            )
            for m in modules
        ]
        blocks.append(DocNode(type=NodeKind.BULLET_LIST, content=items))

    return DocNode(type=NodeKind.DOC, content=blocks)

