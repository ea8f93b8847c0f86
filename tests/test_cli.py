"""Tests for the jobsmith CLI."""

import json
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from jobsmith.cli import main


@pytest.fixture
def runner():
    return CliRunner()


def json_document(output, opener):
    """Decode the JSON document in CLI output (log lines may surround it)."""
    start = output.index(f"{opener}\n")
    return json.JSONDecoder().raw_decode(output[start:])[0]


@pytest.fixture
def in_project(project, monkeypatch):
    monkeypatch.chdir(project)
    return project


class TestBuildCommand:

    def test_build(self, runner, in_project):
        result = runner.invoke(main, ["build"])
        assert result.exit_code == 0, result.output
        assert "Built 4 job(s) into 4 artifact(s)" in result.output
        assert (in_project / "dist" / "jobs" / "nightly-report.pyz").is_file()
        assert (in_project / "dist" / "manifest.json").is_file()

    def test_build_grouped(self, runner, in_project):
        result = runner.invoke(main, ["build", "--mode", "grouped"])
        assert result.exit_code == 0, result.output
        assert (in_project / "dist" / "groups" / "reports.pyz").is_file()
        manifest = json.loads((in_project / "dist" / "manifest.json").read_text())
        assert manifest["nightly-report"]["mode"] == "group"

    def test_build_json(self, runner, in_project):
        result = runner.invoke(main, ["build", "--json"])
        assert result.exit_code == 0, result.output
        data = json_document(result.output, "{")
        assert data["mode"] == "per-job"
        assert sorted(data["jobs"]) == ["Quiet", "WeeklyReport", "cleanup", "nightly-report"]
        assert data["manifest"]["cleanup"] == {"mode": "single", "artifact_path": "jobs/cleanup.pyz"}
        assert "Built 4 job(s)" not in result.output

    def test_invalid_mode(self, runner, in_project):
        result = runner.invoke(main, ["build", "--mode", "bundled"])
        assert result.exit_code != 0

    def test_validation_failure(self, runner, in_project, write_source):
        write_source(in_project / "src" / "pipelines" / "dup_job.py", '''
            from jobsmith import job

            @job("cleanup")
            class Again:
                pass
        ''')
        result = runner.invoke(main, ["build"])
        assert result.exit_code == 1
        assert 'Duplicate job id "cleanup"' in result.output
        assert not (in_project / "dist" / "manifest.json").exists()

    def test_no_job_files(self, runner, tmp_path, monkeypatch):
        (tmp_path / "src").mkdir()
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(main, ["build"])
        assert result.exit_code == 1
        assert "No files matched" in result.output

    def test_explicit_config(self, runner, project, tmp_path, monkeypatch):
        config_path = tmp_path / "settings" / "jobsmith.yaml"
        config_path.parent.mkdir()
        config_path.write_text(yaml.safe_dump({"project_root": str(project), "out_dir": "build"}))
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(main, ["--config", str(config_path), "build"])
        assert result.exit_code == 0, result.output
        assert (project / "build" / "manifest.json").is_file()

    def test_bad_config(self, runner, tmp_path, monkeypatch):
        (tmp_path / "jobsmith.yaml").write_text("mode: sometimes\n")
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(main, ["build"])
        assert result.exit_code == 1
        assert "Config not loaded" in result.output


class TestRunCommand:

    def test_prints_json_result(self, runner, in_project):
        assert runner.invoke(main, ["build"]).exit_code == 0
        result = runner.invoke(main, ["run", "nightly-report", "--no-build"])
        assert result.exit_code == 0, result.output
        assert '{"label": "report:NIGHTLY"}' in result.output

    def test_none_prints_nothing(self, runner, in_project):
        assert runner.invoke(main, ["build"]).exit_code == 0
        result = runner.invoke(main, ["run", "Quiet", "--no-build"])
        assert result.exit_code == 0
        assert "null" not in result.output

    def test_missing_job_id(self, runner, in_project):
        result = runner.invoke(main, ["run"])
        assert result.exit_code == 1
        assert "Usage:" in result.output
        assert "Missing job id" in result.output

    def test_no_build_missing_artifact(self, runner, in_project):
        result = runner.invoke(main, ["run", "cleanup", "--no-build"])
        assert result.exit_code == 1
        assert "jobsmith build" in result.output

    def test_rebuild_uses_hook(self, runner, in_project):
        from jobsmith.builder import build

        def fake_rebuild(config, config_path=None):
            build(config)

        with patch("jobsmith.runner.subprocess_rebuild", side_effect=fake_rebuild) as mock_rebuild:
            result = runner.invoke(main, ["run", "cleanup"])
        assert result.exit_code == 0, result.output
        assert '["removed", 2]' in result.output
        assert mock_rebuild.call_count == 1

    def test_job_failure_exit_code(self, runner, in_project, write_source):
        write_source(in_project / "src" / "pipelines" / "boom_job.py", '''
            from jobsmith import job

            @job
            class Boom:
                def run(self):
                    raise RuntimeError("exploded")
        ''')
        assert runner.invoke(main, ["build"]).exit_code == 0
        result = runner.invoke(main, ["run", "Boom", "--no-build"])
        assert result.exit_code == 1
        assert "Boom failed: exploded" in result.output

    def test_job_failure_traceback_logged(self, runner, in_project, write_source):
        write_source(in_project / "src" / "pipelines" / "boom_job.py", '''
            from jobsmith import job

            @job
            class Boom:
                def run(self):
                    raise RuntimeError("exploded")
        ''')
        assert runner.invoke(main, ["build"]).exit_code == 0
        with patch("jobsmith.cli.logger") as mock_logger:
            result = runner.invoke(main, ["-v", "run", "Boom", "--no-build"])
        assert result.exit_code == 1
        assert mock_logger.debug.call_args.kwargs["exc_info"] is True


class TestJobsCommands:

    def test_list(self, runner, in_project):
        result = runner.invoke(main, ["jobs", "list"])
        assert result.exit_code == 0, result.output
        # log lines share the output; job rows are tab separated
        lines = [line.split("\t") for line in result.output.splitlines() if "\t" in line]
        assert [line[0] for line in lines] == ["Quiet", "WeeklyReport", "cleanup", "nightly-report"]
        by_id = {line[0]: line for line in lines}
        assert by_id["cleanup"][3] == "default"
        assert by_id["nightly-report"][2] == "reports"

    def test_list_json(self, runner, in_project):
        result = runner.invoke(main, ["jobs", "list", "--json"])
        assert result.exit_code == 0, result.output
        jobs = json_document(result.output, "[")
        assert [j["job_id"] for j in jobs] == ["Quiet", "WeeklyReport", "cleanup", "nightly-report"]
        cleanup = jobs[2]
        assert cleanup["class_name"] == "_Cleanup"
        assert cleanup["is_default_exported"] is True
        assert cleanup["source_file"].endswith("cleanup_job.py")

    def test_list_by_group(self, runner, in_project):
        result = runner.invoke(main, ["jobs", "list", "--group", "reports"])
        assert result.exit_code == 0
        assert "cleanup" not in result.output
        assert "nightly-report" in result.output

    def test_show(self, runner, in_project):
        assert runner.invoke(main, ["build", "--mode", "grouped"]).exit_code == 0
        result = runner.invoke(main, ["jobs", "show", "WeeklyReport"])
        assert result.exit_code == 0
        assert "groups/reports.pyz" in result.output
        assert '"group_name": "reports"' in result.output

    def test_show_unknown(self, runner, in_project):
        result = runner.invoke(main, ["jobs", "show", "nope"])
        assert result.exit_code == 1
        assert "Unknown job: nope" in result.output


class TestInitCommand:

    def test_creates_config(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 0
        assert "Initialized jobsmith config" in result.output
        cfg = yaml.safe_load((tmp_path / "jobsmith.yaml").read_text())
        assert cfg["source_root"] == "src"

    def test_does_not_overwrite_without_force(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "jobsmith.yaml").write_text("mode: grouped\n")
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 1
        assert "Config already exists" in result.output
        assert (tmp_path / "jobsmith.yaml").read_text() == "mode: grouped\n"

    def test_force_overwrites_broken_config(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "jobsmith.yaml").write_text("mode: sometimes\n")
        result = runner.invoke(main, ["init", "--force"])
        assert result.exit_code == 0
        assert yaml.safe_load((tmp_path / "jobsmith.yaml").read_text())["mode"] == "per-job"
