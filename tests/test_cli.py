"""
Tests for the worker and maintenance commands.
"""

import pytest
from omegaconf import OmegaConf
from typer.testing import CliRunner

from guidebook_pipeline.cli import app
from guidebook_pipeline.configuration import make_runtime_config
from guidebook_pipeline.models import ProjectCreate, QueueName
from guidebook_pipeline.services import build_services

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    overrides = {
        "paths": {
            "database": str(tmp_path / "cli.db"),
            "staging_dir": str(tmp_path / "uploads"),
            "output_dir": str(tmp_path / "outputs"),
        },
        "storage": {"s3_bucket": ""},
    }
    path = tmp_path / "pipeline.yaml"
    OmegaConf.save(OmegaConf.create(overrides), path)
    return path


@pytest.fixture
def cli_services(config_file):
    """Services sharing the database the CLI commands will open."""
    overrides = OmegaConf.to_container(OmegaConf.load(config_file))
    return build_services(make_runtime_config(overrides))


class TestWorkerCommand:
    def test_once_drains_queue(self, config_file, cli_services):
        project = cli_services.projects.create_project(ProjectCreate(title="Kyoto", author="C. Writer"))
        cli_services.queue.enqueue(
            QueueName.CONTENT_GENERATION.value, {"project_id": project.id, "number_of_chapters": 3}
        )

        result = runner.invoke(app, ["worker", "content-generation", "--once", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "Processed 1 job(s) from content-generation" in result.output
        assert len(cli_services.projects.get_chapters(project.id)) == 3

    def test_once_with_empty_queue(self, config_file):
        result = runner.invoke(app, ["worker", "document-generation", "--once", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Processed 0 job(s) from document-generation" in result.output

    def test_unknown_queue(self, config_file):
        result = runner.invoke(app, ["worker", "no-such-queue", "--once", "--config", str(config_file)])
        assert result.exit_code == 2

    def test_missing_config_file(self, tmp_path):
        result = runner.invoke(app, ["worker", "content-generation", "--once", "--config", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 2


class TestMaintenanceCommands:
    def test_purge_cache_all(self, config_file, cli_services):
        cli_services.cache.set_many([("asset:1", b"a"), ("asset:2", b"b")], scope="p1")

        result = runner.invoke(app, ["purge-cache", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Purged 2 cache entries" in result.output
        assert cli_services.cache.count() == 0

    def test_purge_cache_for_project(self, config_file, cli_services):
        cli_services.cache.set("asset:1", b"a", scope="p1")
        cli_services.cache.set("asset:2", b"b", scope="p2")

        result = runner.invoke(app, ["purge-cache", "--project", "p1", "--config", str(config_file)])

        assert "Purged 1 cache entries" in result.output
        assert cli_services.cache.get("asset:2") == b"b"

    def test_metrics_lists_every_queue(self, config_file, cli_services):
        cli_services.queue.enqueue(QueueName.BOOK_GENERATION.value, {"project_id": "p1"})

        result = runner.invoke(app, ["metrics", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "book-generation: waiting=1 active=0 completed=0 failed=0" in result.output
        for queue_name in QueueName:
            assert f"{queue_name.value}:" in result.output
