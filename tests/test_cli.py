"""
Tests for the CLI interface.
"""

import os
import tempfile
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from prompt_pipeline.cli.main import (
    EXIT_CODE_FAIL,
    EXIT_CODE_NO_CREDITS,
    EXIT_CODE_PASS,
    app,
    load_batch,
)
from prompt_pipeline.core.errors import GenerationError
from prompt_pipeline.core.executor import ModelTurn
from prompt_pipeline.core.jobs import JobStore
from prompt_pipeline.storage.models import JobStatus
from prompt_pipeline.storage.repository import fetch_usage_records, initialize_schema

runner = CliRunner()


@pytest.fixture
def workspace():
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    import shutil
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def model_service(monkeypatch):
    """Replace the model service with one that always answers."""
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.delenv("GOOGLE_SEARCH_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_SEARCH_CX", raising=False)
    with patch('prompt_pipeline.cli.main.OpenAIModelService') as mock_service:
        session = mock_service.return_value.start_session.return_value
        session.send_prompt.return_value = ModelTurn(text="Generated text", finish_reason="stop")
        yield mock_service


def _write_batch(directory: str, prompts, filename: str = "batch.yaml") -> str:
    path = os.path.join(directory, filename)
    with open(path, 'w', encoding='utf-8') as f:
        yaml.dump(prompts, f)
    return path


BATCH = [
    {"label": "Overview", "prompt": "Describe the product"},
    {"label": "Pricing", "prompt": "Propose pricing", "depends_on": [0]},
]


class TestLoadBatch:
    """Test batch file parsing."""

    def test_list_batch(self, workspace):
        prompts = load_batch(_write_batch(workspace, BATCH))

        assert [p.label for p in prompts] == ["Overview", "Pricing"]
        assert prompts[1].depends_on == frozenset({0})

    def test_mapping_batch_with_single_dependency(self, workspace):
        path = _write_batch(workspace, {"prompts": [
            {"label": "A", "prompt": "a"},
            {"label": "B", "prompt": "b", "depends_on": 0},
        ]})

        assert load_batch(path)[1].depends_on == frozenset({0})

    @pytest.mark.parametrize("batch,message", [
        ("just text", "must be a list"),
        ([{"label": "A"}], "Missing required 'prompt'"),
        ([{"label": "A", "prompt": "a", "extra": 1}], "Unknown keys"),
        ([{"label": "A", "prompt": "a", "depends_on": "0"}], "depends_on"),
        ([{"label": "A", "prompt": ""}], "prompt cannot be empty"),
    ])
    def test_invalid_batches(self, workspace, batch, message):
        with pytest.raises(ValueError, match=message):
            load_batch(_write_batch(workspace, batch))

    def test_missing_file(self, workspace):
        with pytest.raises(FileNotFoundError):
            load_batch(os.path.join(workspace, "missing.yaml"))


class TestCLI:
    """Test CLI commands."""

    def test_init_creates_database(self, workspace):
        db_path = os.path.join(workspace, "pipeline.db")

        result = runner.invoke(app, ["init", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(db_path)

    def test_run_writes_marked_output(self, workspace, model_service):
        db_path = os.path.join(workspace, "pipeline.db")
        output_path = os.path.join(workspace, "plan.md")

        result = runner.invoke(app, [
            "run", _write_batch(workspace, BATCH),
            "--db", db_path,
            "--user-id", "user-1",
            "--session-id", "session-1",
            "--output", output_path,
        ])

        assert result.exit_code == EXIT_CODE_PASS
        with open(output_path, encoding="utf-8") as f:
            content = f.read()
        assert "<!-- SECTION_START: Overview -->\nGenerated text\n<!-- SECTION_END: Overview -->" in content
        assert "<!-- SECTION_START: Pricing -->" in content

        jobs = JobStore(db_path).list_jobs(session_id="session-1")
        assert [j.status for j in jobs] == [JobStatus.COMPLETED, JobStatus.COMPLETED]
        assert len(fetch_usage_records(user_id="user-1", db_path=db_path)) == 2

    def test_run_prints_plain_output(self, workspace, model_service):
        result = runner.invoke(app, [
            "run", _write_batch(workspace, BATCH[:1]),
            "--db", os.path.join(workspace, "pipeline.db"),
        ])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Generated text" in result.output
        assert "SECTION_START" not in result.output

    def test_run_without_credits(self, workspace, model_service):
        db_path = os.path.join(workspace, "pipeline.db")

        result = runner.invoke(app, [
            "run", _write_batch(workspace, BATCH),
            "--db", db_path,
            "--credits", "0",
        ])

        assert result.exit_code == EXIT_CODE_NO_CREDITS
        assert "Insufficient credits" in result.output
        assert JobStore(db_path).list_jobs() == []

    def test_run_with_failed_prompt(self, workspace, model_service):
        session = model_service.return_value.start_session.return_value
        session.send_prompt.side_effect = GenerationError("Empty response from AI service")
        db_path = os.path.join(workspace, "pipeline.db")

        result = runner.invoke(app, [
            "run", _write_batch(workspace, BATCH),
            "--db", db_path,
            "--session-id", "session-1",
        ])

        assert result.exit_code == EXIT_CODE_FAIL
        jobs = JobStore(db_path).list_jobs(session_id="session-1")
        assert [j.error_kind for j in jobs] == ["generation_error", "dependency_failed"]

    def test_run_requires_api_key(self, workspace, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)

        result = runner.invoke(app, [
            "run", _write_batch(workspace, BATCH),
            "--db", os.path.join(workspace, "pipeline.db"),
        ])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "GEMINI_API_KEY" in result.output

    def test_run_rejects_forward_dependency(self, workspace, model_service):
        batch = [{"label": "A", "prompt": "a", "depends_on": [1]}, {"label": "B", "prompt": "b"}]

        result = runner.invoke(app, [
            "run", _write_batch(workspace, batch),
            "--db", os.path.join(workspace, "pipeline.db"),
        ])

        assert result.exit_code == EXIT_CODE_FAIL
        model_service.return_value.start_session.assert_not_called()

    def test_status_shows_job_and_usage(self, workspace, model_service):
        db_path = os.path.join(workspace, "pipeline.db")
        runner.invoke(app, [
            "run", _write_batch(workspace, BATCH[:1]),
            "--db", db_path,
            "--session-id", "session-1",
        ])
        (job,) = JobStore(db_path).list_jobs(session_id="session-1")

        result = runner.invoke(app, ["status", job.request_id, "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Status: completed" in result.output
        assert "Tokens:" in result.output

    def test_status_unknown_job(self, workspace):
        db_path = os.path.join(workspace, "pipeline.db")
        initialize_schema(db_path)

        result = runner.invoke(app, ["status", "missing", "--db", db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "not found" in result.output

    def test_status_before_init(self, workspace):
        result = runner.invoke(app, ["status", "req-1", "--db", os.path.join(workspace, "new.db")])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "prompt-pipeline init" in result.output

    def test_usage_lists_records(self, workspace, model_service):
        db_path = os.path.join(workspace, "pipeline.db")
        runner.invoke(app, ["run", _write_batch(workspace, BATCH), "--db", db_path, "--user-id", "user-1"])

        result = runner.invoke(app, ["usage", "--db", db_path, "--user-id", "user-1"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Total estimated cost" in result.output

    def test_usage_empty(self, workspace):
        db_path = os.path.join(workspace, "pipeline.db")
        initialize_schema(db_path)

        result = runner.invoke(app, ["usage", "--db", db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage recorded yet" in result.output
