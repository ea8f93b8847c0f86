"""Tests for the runtime resolver/dispatcher."""

import sys
import types
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from jobsmith.builder import build
from jobsmith.config import JobsmithConfig
from jobsmith.errors import BundlingError, RuntimeResolutionError
from jobsmith.runner import (
    ResolvedArtifact,
    ensure_built,
    execute,
    extract_implementation,
    format_result,
    locate_artifact,
    run_job,
    subprocess_rebuild,
)
from jobsmith.schemas import MODE_GROUP, MODE_SINGLE, ManifestEntry


class CountingRebuild:
    """Rebuild hook that runs the build in-process and counts calls."""

    def __init__(self, produce=True):
        self.calls = 0
        self.produce = produce

    def __call__(self, config):
        self.calls += 1
        if self.produce:
            build(config)


class TestRunJob:
    """End-to-end: build with the real bundler, then run."""

    def test_runs_built_job(self, config):
        build(config)
        assert run_job("nightly-report", config, no_build=True) == {"label": "report:NIGHTLY"}

    def test_async_job_awaited(self, config):
        build(config)
        assert run_job("cleanup", config, no_build=True) == ["removed", 2]

    def test_none_result(self, config):
        build(config)
        assert run_job("Quiet", config, no_build=True) is None

    def test_grouped_job(self, grouped_config):
        build(grouped_config)
        assert run_job("WeeklyReport", grouped_config, no_build=True) == {"weekly": True}
        assert run_job("nightly-report", grouped_config, no_build=True) == {"label": "report:NIGHTLY"}

    def test_rebuilds_once_when_missing(self, config):
        rebuild = CountingRebuild()
        assert run_job("cleanup", config, rebuild=rebuild) == ["removed", 2]
        assert rebuild.calls == 1

        assert run_job("cleanup", config, rebuild=rebuild) == ["removed", 2]
        assert rebuild.calls == 1

    def test_still_missing_after_rebuild(self, config):
        rebuild = CountingRebuild(produce=False)
        with pytest.raises(RuntimeResolutionError, match="after rebuilding"):
            run_job("cleanup", config, rebuild=rebuild)
        assert rebuild.calls == 1

    def test_unknown_job_after_rebuild(self, config):
        rebuild = CountingRebuild()
        with pytest.raises(RuntimeResolutionError, match="'nope'"):
            run_job("nope", config, rebuild=rebuild)
        assert rebuild.calls == 1

    def test_no_build_names_artifact_and_command(self, config):
        rebuild = CountingRebuild()
        with pytest.raises(RuntimeResolutionError) as exc_info:
            run_job("cleanup", config, no_build=True, rebuild=rebuild)
        message = str(exc_info.value)
        assert str(config.out_dir / "jobs" / "cleanup.pyz") in message
        assert "jobsmith build" in message
        assert rebuild.calls == 0

    def test_job_exceptions_propagate(self, config, write_source):
        write_source(config.source_root / "pipelines" / "boom_job.py", '''
            from jobsmith import job

            @job
            class Boom:
                def run(self):
                    raise ValueError("boom")
        ''')
        build(config)
        with pytest.raises(ValueError, match="^boom$"):
            run_job("Boom", config, no_build=True)

    def test_conditionally_imported_name_available(self, config, write_source):
        write_source(config.source_root / "pipelines" / "decode_job.py", '''
            from jobsmith import job

            try:
                import ujson as json
            except ImportError:
                import json

            @job
            class Decoder:
                def run(self):
                    return json.loads("[1]")
        ''')
        build(config)
        assert run_job("Decoder", config, no_build=True) == [1]

    def test_missing_entry_method(self, config, write_source):
        write_source(config.source_root / "pipelines" / "idle_job.py", '''
            from jobsmith import job

            @job
            class Idle:
                name = "idle"
        ''')
        build(config)
        with pytest.raises(RuntimeResolutionError, match="no executable entry point"):
            run_job("Idle", config, no_build=True)

    def test_configured_entry_method(self, project, write_source):
        write_source(project / "src" / "pipelines" / "execute_job.py", '''
            from jobsmith import job

            @job
            class Executes:
                def execute(self):
                    return "executed"
        ''')
        config = JobsmithConfig(project_root=project, entry_method="execute")
        build(config)
        assert run_job("Executes", config, no_build=True) == "executed"

    def test_reload_sees_rebuilt_archive(self, config):
        build(config)
        assert run_job("nightly-report", config, no_build=True) == {"label": "report:NIGHTLY"}

        util = config.source_root / "pipelines" / "util.py"
        util.write_text("def shout(text):\n    return text + '!'\n")
        build(config)
        assert run_job("nightly-report", config, no_build=True) == {"label": "report:nightly!"}

    def test_archive_removed_from_path_after_run(self, config):
        build(config)
        run_job("Quiet", config, no_build=True)
        assert not any(p.endswith(".pyz") for p in sys.path)
        assert "_jobsmith_entry" not in sys.modules
        assert "pipelines.util" not in sys.modules

    def test_newer_target_rejected(self, project):
        config = JobsmithConfig(project_root=project, target="99.0")
        build(config)
        with pytest.raises(RuntimeResolutionError, match="built for Python 99.0"):
            run_job("Quiet", config, no_build=True)


class TestLocateArtifact:

    def test_guesses_jobs_path_without_manifest(self, config):
        resolved = locate_artifact("anything", config)
        assert resolved.artifact == config.out_dir / "jobs" / "anything.pyz"
        assert resolved.entry is None
        assert not resolved.exists

    def test_uses_manifest(self, grouped_config):
        build(grouped_config)
        resolved = locate_artifact("nightly-report", grouped_config)
        assert resolved.artifact == grouped_config.out_dir / "groups" / "reports.pyz"
        assert resolved.entry.group_name == "reports"
        assert resolved.exists

    def test_corrupt_manifest(self, config):
        config.manifest_path.parent.mkdir(parents=True)
        config.manifest_path.write_text("{")
        with pytest.raises(RuntimeResolutionError, match="Corrupt manifest"):
            ensure_built("cleanup", config, no_build=True)


class TestExtractImplementation:

    class Direct:
        pass

    class FromRegistry:
        pass

    def module(self, **attrs):
        module = types.ModuleType("_jobsmith_entry")
        for name, value in attrs.items():
            setattr(module, name, value)
        return module

    def resolved(self, mode=None):
        entry = None
        if mode == MODE_GROUP:
            entry = ManifestEntry(mode=MODE_GROUP, artifact_path="groups/g.pyz", group_name="g")
        elif mode == MODE_SINGLE:
            entry = ManifestEntry(mode=MODE_SINGLE, artifact_path="jobs/a.pyz")
        return ResolvedArtifact(job_id="a", artifact=Path("dist/x.pyz"), entry=entry)

    def test_default_wins_over_registry(self):
        module = self.module(default=self.Direct, JOBS={"a": self.FromRegistry})
        assert extract_implementation(module, self.resolved(MODE_GROUP)) is self.Direct

    def test_registry_for_group_entry(self):
        module = self.module(JOBS={"a": self.FromRegistry})
        assert extract_implementation(module, self.resolved(MODE_GROUP)) is self.FromRegistry

    def test_registry_ignored_for_single_entry(self):
        module = self.module(JOBS={"a": self.FromRegistry})
        with pytest.raises(RuntimeResolutionError, match="artifact exposes no job implementation"):
            extract_implementation(module, self.resolved(MODE_SINGLE))

    def test_registry_ignored_without_manifest(self):
        module = self.module(JOBS={"a": self.FromRegistry})
        with pytest.raises(RuntimeResolutionError, match="artifact exposes no job implementation"):
            extract_implementation(module, self.resolved())

    def test_registry_without_job(self):
        module = self.module(JOBS={"other": self.FromRegistry})
        with pytest.raises(RuntimeResolutionError, match="artifact exposes no job implementation"):
            extract_implementation(module, self.resolved(MODE_GROUP))

    def test_nothing_exposed(self):
        with pytest.raises(RuntimeResolutionError, match="artifact exposes no job implementation"):
            extract_implementation(self.module(), self.resolved(MODE_GROUP))


class TestExecute:

    def test_sync(self):
        class Job:
            def run(self):
                return 42

        assert execute(Job) == 42

    def test_async(self):
        class Job:
            async def run(self):
                return "done"

        assert execute(Job) == "done"

    def test_non_callable_entry(self):
        class Job:
            run = "not callable"

        with pytest.raises(RuntimeResolutionError, match="no executable entry point"):
            execute(Job)


class TestFormatResult:

    def test_none(self):
        assert format_result(None) is None

    def test_json(self):
        assert format_result({"a": [1, 2]}) == '{"a": [1, 2]}'
        assert format_result("text") == '"text"'

    def test_cycle_falls_back_to_str(self):
        value = []
        value.append(value)
        assert format_result(value) == "[[...]]"

    def test_non_json_type_falls_back_to_str(self):
        assert format_result({1, 2}) == "{1, 2}"


class TestSubprocessRebuild:

    def test_runs_build_in_project_root(self, config):
        with patch("jobsmith.runner.subprocess.run", return_value=MagicMock(returncode=0)) as mock_run:
            subprocess_rebuild(config, config_path=Path("custom.yaml"))

        cmd = mock_run.call_args.args[0]
        assert cmd[:3] == [sys.executable, "-m", "jobsmith"]
        assert cmd[3:] == ["--config", "custom.yaml", "build", "--mode", "per-job"]
        assert mock_run.call_args.kwargs["cwd"] == config.project_root

    def test_non_zero_exit(self, config):
        failed = MagicMock(returncode=1, stderr="✗ Build failed: boom", stdout="")
        with patch("jobsmith.runner.subprocess.run", return_value=failed):
            with pytest.raises(BundlingError, match="exit code 1"):
                subprocess_rebuild(config)
