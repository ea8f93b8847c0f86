import logging
import textwrap
from pathlib import Path

import pytest

from jobsmith.config import JobsmithConfig


REPORT_JOB = '''
import json
import os

from jobsmith import job, group

from .util import shout

PREFIX = "report"


def label(name):
    return f"{PREFIX}:{shout(name)}"


@job("nightly-report")
@group("reports")
class NightlyReport:
    def run(self):
        return {"label": label("nightly")}


@job
@group("reports")
class WeeklyReport:
    def run(self):
        return json.loads('{"weekly": true}')
'''

CLEANUP_JOB = '''
import asyncio

from jobsmith import job


@job("cleanup")
class _Cleanup:
    async def run(self):
        await asyncio.sleep(0)
        return ["removed", 2]


default = _Cleanup
'''

QUIET_JOB = '''
from jobsmith import job


@job
class Quiet:
    def run(self):
        pass
'''

UTIL = '''
def shout(text):
    return text.upper()
'''


@pytest.fixture(autouse=True)
def reset_jobsmith_logger():
    """CLI invocations configure the jobsmith logger; undo that between tests."""
    yield
    logger = logging.getLogger("jobsmith")
    logger.handlers = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def write_source():
    """Write a dedented source file, creating parent directories."""
    def _write(path: Path, text: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text).lstrip())
        return path
    return _write


@pytest.fixture
def project(tmp_path, write_source) -> Path:
    """A project with a `pipelines` package holding three job sources."""
    root = tmp_path / "project"
    src = root / "src" / "pipelines"
    write_source(src / "__init__.py", "")
    write_source(src / "util.py", UTIL)
    write_source(src / "report_job.py", REPORT_JOB)
    write_source(src / "cleanup_job.py", CLEANUP_JOB)
    write_source(src / "quiet_job.py", QUIET_JOB)
    return root


@pytest.fixture
def config(project) -> JobsmithConfig:
    return JobsmithConfig(project_root=project, workers=2)


@pytest.fixture
def grouped_config(project) -> JobsmithConfig:
    return JobsmithConfig(project_root=project, mode="grouped", workers=2)
