"""CLI commands for the product knowledge base."""

import asyncio
import logging
import re
import sys

import click

from product_kb.config import settings


class SecretRedactingFilter(logging.Filter):
    """Filter to redact sensitive information from logs."""

    # Patterns for common secrets
    SECRET_PATTERNS = [
        (re.compile(r"(api[_-]?key[\s:=]+)[\w-]{20,}", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(token[\s:=]+)[\w-]{20,}", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(bearer\s+)[\w.-]+", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"\b(gh[pousr]_)[A-Za-z0-9]{20,}"), r"\1[REDACTED]"),
        (re.compile(r"\b(sk-(?:ant-)?)[\w-]{20,}"), r"\1[REDACTED]"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact secrets from log messages."""
        if isinstance(record.msg, str):
            for pattern, replacement in self.SECRET_PATTERNS:
                record.msg = pattern.sub(replacement, record.msg)
        return True


# Configure logging with secret redaction
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logging.getLogger().addFilter(SecretRedactingFilter())
logger = logging.getLogger(__name__)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--database-url", envvar="DATABASE_URL", help="Override DATABASE_URL")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, database_url: str | None) -> None:
    """Product Knowledge Base CLI."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url or settings.DATABASE_URL


def _workspace_option(f):
    return click.option("--workspace", "-w", required=True, help="Workspace ID")(f)


@cli.command("init-db")
@click.pass_context
def init_db_command(ctx: click.Context) -> None:
    """Create database tables."""
    asyncio.run(_init_db(ctx.obj["database_url"]))


async def _init_db(database_url: str) -> None:
    from product_kb.db.database import create_engine, init_db

    engine = create_engine(database_url)
    try:
        await init_db(engine)
    finally:
        await engine.dispose()
    click.echo(f"Database initialized at {database_url}")


@cli.command()
@click.argument("source_type", type=click.Choice(["evidence", "artifact", "codebase_module"]))
@click.argument("source_id")
@_workspace_option
@click.pass_context
def index(ctx: click.Context, source_type: str, source_id: str, workspace: str) -> None:
    """Re-index one record (chunk, embed and replace its chunks)."""
    asyncio.run(_index(ctx.obj["database_url"], source_type, source_id, workspace))


async def _index(database_url: str, source_type: str, source_id: str, workspace: str) -> None:
    from product_kb.exceptions import NotFoundError
    from product_kb.resources import Resources

    resources = await Resources.open(database_url)
    try:
        result = await resources.indexer.index(source_type, source_id, workspace)
    except NotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        await resources.aclose()

    click.echo(f"Indexed {source_type} {source_id}")
    click.echo(f"  Chunks: {result.chunk_count}")
    click.echo(f"  Embedded: {result.embedded_count}")
    if result.failed_count:
        click.echo(f"  Without vector: {result.failed_count}")


@cli.command()
@click.argument("query")
@_workspace_option
@click.option("--limit", "-n", default=5, help="Number of results")
@click.option("--type", "source_types", multiple=True, help="Restrict to a source type (repeatable)")
@click.pass_context
def search(ctx: click.Context, query: str, workspace: str, limit: int, source_types: tuple[str, ...]) -> None:
    """Search the workspace's knowledge base."""
    asyncio.run(_search(ctx.obj["database_url"], query, workspace, limit, list(source_types) or None))


async def _search(
    database_url: str, query: str, workspace: str, limit: int, source_types: list[str] | None
) -> None:
    from product_kb.resources import Resources

    resources = await Resources.open(database_url)
    try:
        results = await resources.search.search(query, workspace, source_types=source_types, limit=limit)
    finally:
        await resources.aclose()

    if not results:
        click.echo("No results found.")
        return

    click.echo(f"\nFound {len(results)} results:\n")
    for i, result in enumerate(results, 1):
        label = result.title or result.metadata.get("file_path") or result.source_id
        click.echo(f"{i}. [{result.source_type}] {label} (similarity: {result.similarity:.3f})")
        click.echo(f"   {result.chunk_text[:200]}...")
        click.echo()


@cli.command("compute-clusters")
@_workspace_option
@click.option("--force", is_flag=True, help="Recompute even if clusters are fresh")
@click.pass_context
def compute_clusters(ctx: click.Context, workspace: str, force: bool) -> None:
    """Group the workspace's evidence into themed clusters."""
    asyncio.run(_compute_clusters(ctx.obj["database_url"], workspace, force))


async def _compute_clusters(database_url: str, workspace: str, force: bool) -> None:
    from product_kb.exceptions import ComputeConflictError
    from product_kb.resources import Resources

    resources = await Resources.open(database_url)
    try:
        result = await resources.clusters.compute_clusters(
            workspace, on_progress=lambda step: click.echo(f"  ... {step}"), force=force
        )
    except ComputeConflictError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        await resources.aclose()

    if result.status == "skipped":
        click.echo("Clusters are up to date (use --force to recompute).")
        return
    click.echo("\nClustering complete!")
    click.echo(f"  Clusters: {result.cluster_count}")
    click.echo(f"  Clustered evidence: {result.clustered_count}")
    click.echo(f"  Unclustered evidence: {len(result.unclustered_evidence_ids)}")
    click.echo(f"  Carried forward: {result.carried_forward}")


@cli.command("sync-repo")
@click.argument("connection_id")
@_workspace_option
@click.option("--token", envvar="GITHUB_TOKEN", help="Source-control access token")
@click.pass_context
def sync_repo(ctx: click.Context, connection_id: str, workspace: str, token: str | None) -> None:
    """Sync a connected repository and wait for it to finish."""
    asyncio.run(_sync_repo(ctx.obj["database_url"], connection_id, workspace, token))


async def _sync_repo(database_url: str, connection_id: str, workspace: str, token: str | None) -> None:
    from product_kb.exceptions import ConflictError, NotFoundError
    from product_kb.resources import Resources

    resources = await Resources.open(database_url)
    try:
        connection = await resources.sync.sync_repository(connection_id, workspace, credentials=token)
    except (NotFoundError, ConflictError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        logger.error(f"Sync failed: {e}")
        sys.exit(1)
    finally:
        await resources.aclose()

    click.echo(f"\nSync of {connection.repo_name} complete!")
    click.echo(f"  Files: {connection.file_count}")
    click.echo(f"  Modules: {connection.module_count}")


@cli.command()
@click.pass_context
def reconcile(ctx: click.Context) -> None:
    """Fail syncs and computations left running by a dead process."""
    asyncio.run(_reconcile(ctx.obj["database_url"]))


async def _reconcile(database_url: str) -> None:
    from product_kb.db.database import create_engine, create_session_factory
    from product_kb.jobs import reconcile_interrupted_jobs

    engine = create_engine(database_url)
    try:
        result = await reconcile_interrupted_jobs(create_session_factory(engine))
    finally:
        await engine.dispose()

    click.echo(f"Interrupted syncs: {result.interrupted_syncs}")
    click.echo(f"Interrupted computations: {result.interrupted_computations}")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
