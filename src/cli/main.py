"""
Typer CLI for the pathforge content pipeline.

Commands:
    pathforge build           - Run the content-build stages for a material set
    pathforge compensate      - Replay a saga's compensating actions
    pathforge init-db         - Create the pipeline tables
    pathforge show-config     - Show the effective configuration

Usage:
    pathforge --help
    pathforge build --user <uuid> --set <uuid>
    pathforge build --user <uuid> --set <uuid> --stages path_plan --stages node_docs
    pathforge compensate <saga-uuid>
"""

from __future__ import annotations

import asyncio
import sys
import uuid
from uuid import UUID

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config import get_settings

app = typer.Typer(
    help="pathforge CLI: materials -> concept graph -> learning path -> lesson docs",
    no_args_is_help=True,
)

console = Console()

LOG_FORMAT = "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}"


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Replace the default sink with stderr at `level`, plus an optional rotating file."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file:
        logger.add(log_file, level=level.upper(), rotation="10 MB", retention=5, enqueue=True)


@app.callback()
def main_callback() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file)


# ========================================
# Context Builder (Dependency Injection)
# ========================================


class CLIContext:
    """
    Dependency injection container for CLI commands.

    Lazily initializes services so `show-config` never loads the model stack.
    """

    def __init__(self):
        self.settings = get_settings()
        self._uow = None
        self._prompts = None
        self._vectors = None
        self._graph = None

    @property
    def uow(self):
        if self._uow is None:
            from src.db.repository import UnitOfWork

            self._uow = UnitOfWork()
        return self._uow

    @property
    def prompts(self):
        if self._prompts is None:
            from src.generation.prompt_runner import PromptRunner

            self._prompts = PromptRunner()
        return self._prompts

    @property
    def vectors(self):
        if self._vectors is None and self.settings.has_vector_store_configured():
            from src.sync.vector_store import PineconeVectorStore

            self._vectors = PineconeVectorStore()
        return self._vectors

    @property
    def graph(self):
        if self._graph is None and self.settings.graph_sync_enabled:
            from src.sync.graph_store import Neo4jGraphStore

            self._graph = Neo4jGraphStore()
        return self._graph

    async def close(self) -> None:
        for client in (self._vectors, self._graph):
            if client is not None:
                await client.close()


def _parse_uuid(value: str, name: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        rprint(f"[red]✗[/red] {name} must be a UUID (got {value!r})")
        raise typer.Exit(code=2)


# ========================================
# BUILD
# ========================================


@app.command("build")
def build(
    user: str = typer.Option(..., "--user", help="Owner user id"),
    material_set: str = typer.Option(..., "--set", help="Material set id"),
    stages: list[str] = typer.Option(None, "--stages", help="Stages to run (repeatable); default all"),
    saga: str = typer.Option(None, "--saga", help="Saga id to record compensations under (default: new)"),
) -> None:
    """
    Run the content-build stages for one material set.

    Stages run in pipeline order regardless of the order given:
    concept_graph, concept_clusters, material_kg, path_plan, node_docs.
    """
    from src.pipeline.records import StageInput
    from src.pipeline.runner import PipelineServices, run_pipeline, select_stages

    try:
        selected = select_stages(stages)
    except ValueError as exc:
        rprint(f"[red]✗[/red] {exc}")
        raise typer.Exit(code=2)

    ctx = CLIContext()
    if not ctx.settings.has_ai_configured():
        rprint("[red]✗[/red] Gemini is not configured (GEMINI_API_KEY)")
        raise typer.Exit(code=1)

    inp = StageInput(
        owner_user_id=_parse_uuid(user, "--user"),
        material_set_id=_parse_uuid(material_set, "--set"),
        saga_id=_parse_uuid(saga, "--saga") if saga else uuid.uuid4(),
    )

    rprint("\n[bold cyan]pathforge build[/bold cyan]")
    rprint(f"  Material set: {inp.material_set_id}")
    rprint(f"  Stages: {', '.join(selected)}")
    rprint(f"  Saga: {inp.saga_id}")
    rprint(f"  Quality mode: {ctx.settings.quality_mode}\n")

    async def _run():
        try:
            services = PipelineServices(ctx.uow, ctx.prompts, ctx.vectors, ctx.graph, ctx.settings)
            return await run_pipeline(inp, services, selected)
        finally:
            await ctx.close()

    try:
        run = asyncio.run(_run())
    except Exception as exc:
        rprint(f"[red]✗[/red] Build failed: {exc}")
        rprint(f"  Roll back derived caches with: pathforge compensate {inp.saga_id}")
        raise typer.Exit(code=1)

    table = Table(title="Stage Results", show_header=True)
    table.add_column("Stage", style="cyan")
    table.add_column("Result", style="green")
    for name, result in run.summary().items():
        shown = {k: v for k, v in result.items() if not isinstance(v, (list, dict))}
        table.add_row(name, ", ".join(f"{k}={v}" for k, v in shown.items()))
    console.print(table)

    if run.paused_at:
        rprint(f"[yellow]⚠[/yellow] Paused at {run.paused_at}: confirm the path intake and re-run")
    else:
        rprint("[green]✓[/green] Build complete")


# ========================================
# COMPENSATE
# ========================================


@app.command("compensate")
def compensate_cmd(saga_id: str = typer.Argument(..., help="Saga id to compensate")) -> None:
    """Delete vectors recorded by a saga's pending actions, newest first."""
    from src.pipeline.errors import CompensationError
    from src.pipeline.saga import compensate

    sid = _parse_uuid(saga_id, "SAGA_ID")
    ctx = CLIContext()
    if ctx.vectors is None:
        rprint("[red]✗[/red] Pinecone is not configured (PINECONE_API_KEY, PINECONE_INDEX_HOST)")
        raise typer.Exit(code=1)

    async def _run():
        try:
            return await compensate(sid, ctx.uow, ctx.vectors)
        finally:
            await ctx.close()

    try:
        result = asyncio.run(_run())
    except CompensationError as exc:
        rprint(f"[red]✗[/red] {exc}")
        raise typer.Exit(code=1)
    rprint(f"[green]✓[/green] Saga {sid} {result.status}: {result.executed} actions executed")


# ========================================
# INIT DB
# ========================================


@app.command("init-db")
def init_db_cmd() -> None:
    """Create any missing pipeline tables in DATABASE_URL."""
    from src.db.database import init_db

    try:
        tables = init_db()
    except Exception as exc:
        rprint(f"[red]✗[/red] Database init failed: {exc}")
        raise typer.Exit(code=1)
    rprint(f"[green]✓[/green] {len(tables)} tables ready")


# ========================================
# SHOW CONFIG
# ========================================


@app.command("show-config")
def show_config() -> None:
    """Show configuration with secrets masked."""
    settings = get_settings()

    table = Table(title="pathforge Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Database URL", settings.database_url)
    table.add_row("Gemini API Key", "***" if settings.gemini_api_key else "Not set")
    table.add_row("AI Model", settings.ai_model)
    table.add_row("Embedding Model", settings.embedding_model)
    table.add_row("Pinecone", "configured" if settings.has_vector_store_configured() else "Not set")
    table.add_row("Graph Sync", str(settings.graph_sync_enabled))
    table.add_row("Quality Mode", settings.quality_mode)
    table.add_row("Log Level", settings.log_level)
    console.print(table)

    node_doc = Table(title="Node Doc Build")
    node_doc.add_column("Setting", style="cyan")
    node_doc.add_column("Value", style="green")
    for key, value in settings.get_node_doc_config().items():
        node_doc.add_row(key, str(value))
    console.print(node_doc)

    canonical = Table(title="Canonical Concept Matching")
    canonical.add_column("Setting", style="cyan")
    canonical.add_column("Value", style="green")
    for key, value in settings.get_canonical_match_config().items():
        canonical.add_row(key, str(value))
    console.print(canonical)


def run() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    run()
