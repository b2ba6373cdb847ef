"""
Unit tests for the stage runner and the Typer CLI.
"""
import pytest
from typer.testing import CliRunner

from config import get_settings
from src.cli.main import app
from src.pipeline.errors import ContractError
from src.pipeline.runner import STAGE_ORDER, PipelineServices, run_pipeline, select_stages

TEXTS = ["Routers forward packets using routing tables.", "Subnet masks split addresses."]


def script_graph_and_clusters(prompts, chunk_ids):
    prompts.script(
        "concept_inventory",
        {"concepts": [
            {"key": "routing", "name": "Routing", "summary": "Forwarding.", "citations": [str(chunk_ids[0])]},
            {"key": "subnet_mask", "name": "Subnet mask", "citations": [str(chunk_ids[1])]},
        ]},
    )
    prompts.script("concept_inventory_delta", {"concepts": []})
    prompts.script("concept_edges", {"edges": [{"from_key": "subnet_mask", "to_key": "routing", "edge_type": "prereq"}]})
    prompts.script("concept_clusters", {"clusters": [{"label": "Layer 3", "concept_keys": ["routing", "subnet_mask"]}]})


# ============================================================================
# Runner
# ============================================================================


class TestSelectStages:
    """Tests for select_stages()."""

    def test_default_is_every_stage(self):
        """No selection runs the whole pipeline."""
        assert select_stages(None) == list(STAGE_ORDER)
        assert select_stages([]) == list(STAGE_ORDER)

    def test_pipeline_order_and_normalization(self):
        """Names are normalized and returned in pipeline order."""
        assert select_stages(["Node-Docs", " concept_graph "]) == ["concept_graph", "node_docs"]

    def test_unknown_stage(self):
        """Unknown names raise ValueError listing the choices."""
        with pytest.raises(ValueError, match="unknown stages: bogus"):
            select_stages(["concept_graph", "bogus"])


class TestRunPipeline:
    """Tests for run_pipeline()."""

    @pytest.mark.asyncio
    async def test_path_id_flows_to_later_stages(self, uow, seed, prompts, vectors, settings):
        """The path created by the concept graph is used by the cluster stage."""
        script_graph_and_clusters(prompts, seed.add_chunks(TEXTS))
        services = PipelineServices(uow, prompts, vectors, None, settings)

        run = await run_pipeline(seed.stage_input(), services, ["concept_clusters", "concept_graph"])

        assert list(run.results) == ["concept_graph", "concept_clusters"]
        assert run.inp.path_id == run.results["concept_graph"].path_id
        assert run.results["concept_clusters"].clusters_made == 1
        assert run.paused_at is None
        assert uow.store.saga_runs[seed.saga_id] == "succeeded"
        assert run.summary()["concept_graph"]["concepts_made"] == 2

    @pytest.mark.asyncio
    async def test_pause_stops_the_run(self, uow, seed, prompts, settings):
        """A paused stage ends the run without failing the saga."""
        seed.add_chunks(TEXTS)
        with uow.transaction() as repo:
            path = repo.ensure_path(seed.user_id, seed.set_id)
            repo.update_path(path.id, metadata={"intake": {"paths_confirmed": False}})

        run = await run_pipeline(seed.stage_input(), PipelineServices(uow, prompts, settings=settings))

        assert run.paused_at == "concept_graph"
        assert list(run.results) == ["concept_graph"]
        assert uow.store.saga_runs[seed.saga_id] == "succeeded"

    @pytest.mark.asyncio
    async def test_failure_marks_saga_failed(self, uow, seed, prompts, settings):
        """A stage error fails the saga run and propagates."""
        with pytest.raises(ContractError):
            await run_pipeline(
                seed.stage_input(), PipelineServices(uow, prompts, settings=settings), ["concept_graph"]
            )

        assert uow.store.saga_runs[seed.saga_id] == "failed"


# ============================================================================
# CLI
# ============================================================================


@pytest.fixture
def cli(monkeypatch):
    """CliRunner with a fresh settings cache and no external services."""
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("PINECONE_API_KEY", raising=False)
    monkeypatch.setenv("LEARNING_QUALITY_MODE", "high")
    get_settings.cache_clear()
    yield CliRunner()
    get_settings.cache_clear()


class TestCLI:
    """Tests for the pathforge CLI."""

    def test_show_config(self, cli):
        """show-config prints the effective settings."""
        result = cli.invoke(app, ["show-config"])

        assert result.exit_code == 0
        assert "Quality Mode" in result.output
        assert "high" in result.output
        assert "must_cite_per_node" in result.output

    def test_build_rejects_unknown_stage(self, cli):
        """An unknown stage name exits with a usage error."""
        result = cli.invoke(app, ["build", "--user", "u", "--set", "s", "--stages", "bogus"])

        assert result.exit_code == 2
        assert "unknown stages" in result.output

    def test_build_requires_ai_provider(self, cli):
        """Without a Gemini key the build stops before touching the database."""
        result = cli.invoke(app, ["build", "--user", "u", "--set", "s"])

        assert result.exit_code == 1
        assert "GEMINI_API_KEY" in result.output

    def test_build_rejects_bad_uuid(self, cli, monkeypatch):
        """Ids must be UUIDs."""
        monkeypatch.setenv("GEMINI_API_KEY", "test-key")
        get_settings.cache_clear()

        result = cli.invoke(app, ["build", "--user", "not-a-uuid", "--set", "s"])

        assert result.exit_code == 2
        assert "--user must be a UUID" in result.output

    def test_init_db_reports_tables(self, cli, monkeypatch):
        """init-db creates the tables and reports how many are ready."""
        import src.db.database as database

        monkeypatch.setattr(database, "init_db", lambda: ["concepts", "learning_paths"])

        result = cli.invoke(app, ["init-db"])

        assert result.exit_code == 0
        assert "2 tables ready" in result.output

    def test_init_db_failure_exits_nonzero(self, cli, monkeypatch):
        """A database error is reported and exits with code 1."""
        import src.db.database as database

        def boom():
            raise RuntimeError("connection refused")

        monkeypatch.setattr(database, "init_db", boom)

        result = cli.invoke(app, ["init-db"])

        assert result.exit_code == 1
        assert "connection refused" in result.output
