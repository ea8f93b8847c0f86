"""
Job discovery - find decorated job classes in source files.

Discovery is purely static: each job source is parsed with ``ast`` and
its top-level class statements are inspected for the job and group
decorators. Nothing is imported or executed.

    @job                      -> job id is the class name
    @job("nightly-report")    -> explicit job id
    @group("reports")         -> group membership (grouped builds only)

Export shape follows module conventions:
- named export: listed in a literal ``__all__``, or (without ``__all__``)
  a class name with no leading underscore
- default export: a top-level ``default = ClassName`` binding
"""

import ast
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from jobsmith.config import JobsmithConfig
from jobsmith.errors import DiscoveryError
from jobsmith.schemas import CandidateJob, Marker, MarkerKind
from jobsmith.utils import relative_to_root

logger = logging.getLogger(__name__)

# Module attribute that holds a job module's default export
DEFAULT_EXPORT_NAME = "default"

# Keyword arguments accepted in place of the positional marker argument
_MARKER_KEYWORDS = ("id", "name")


def find_job_files(config: JobsmithConfig) -> list[Path]:
    """
    Find job source files under the source root.

    Returns:
        Sorted list of absolute file paths

    Raises:
        DiscoveryError: If the source root is missing or nothing matches
    """
    if not config.source_root.is_dir():
        raise DiscoveryError(f"Source root does not exist: {config.source_root}")

    files = sorted(
        p for p in config.source_root.glob(config.job_glob)
        if p.is_file() and p.suffix == ".py" and "__pycache__" not in p.parts
    )
    if not files:
        pattern = f"{relative_to_root(config.source_root, config.project_root)}/{config.job_glob}"
        raise DiscoveryError(f"No files matched {pattern}")
    return files


def parse_source(path: Path) -> tuple[str, ast.Module]:
    """
    Read and parse a source file.

    Raises:
        DiscoveryError: If the file cannot be read or parsed
    """
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise DiscoveryError(f"Cannot read {path}: {e}") from e
    try:
        tree = ast.parse(text, filename=str(path))
    except SyntaxError as e:
        raise DiscoveryError(f"Cannot parse {path}:{e.lineno}: {e.msg}") from e
    return text, tree


def _callee_name(node: ast.expr) -> Optional[str]:
    """Name a decorator refers to: ``job`` for ``@job`` and ``@markers.job``."""
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    return None


def read_marker(decorator: ast.expr, name: str, path: Path, class_name: str) -> Optional[Marker]:
    """
    Interpret one decorator as marker ``name``.

    Returns:
        The Marker, or None if the decorator is something else

    Raises:
        DiscoveryError: If the marker argument is not a string literal
    """
    target = decorator.func if isinstance(decorator, ast.Call) else decorator
    if _callee_name(target) != name:
        return None
    if not isinstance(decorator, ast.Call):
        return Marker.bare(name)

    arg = decorator.args[0] if decorator.args else None
    if arg is None:
        for keyword in decorator.keywords:
            if keyword.arg in _MARKER_KEYWORDS:
                arg = keyword.value
                break
    if arg is None:
        return Marker.bare(name)
    if isinstance(arg, ast.Constant) and isinstance(arg.value, str):
        return Marker.with_arg(name, arg.value)

    raise DiscoveryError(
        f"@{name} on class {class_name} in {path}:{decorator.lineno} must be given "
        f"a string literal (the value has to be known without running the module)"
    )


def _literal_names(node: ast.expr) -> Optional[list[str]]:
    """Names in a literal list/tuple of strings, or None if not literal."""
    if not isinstance(node, (ast.List, ast.Tuple)):
        return None
    names = []
    for element in node.elts:
        if not (isinstance(element, ast.Constant) and isinstance(element.value, str)):
            return None
        names.append(element.value)
    return names


def module_exports(tree: ast.Module) -> tuple[Optional[set[str]], Optional[str]]:
    """
    Read a module's export declarations.

    Returns:
        (names listed in a literal ``__all__`` or None, class name bound
        to ``default`` or None)
    """
    all_names: Optional[set[str]] = None
    default_name: Optional[str] = None

    for stmt in tree.body:
        if isinstance(stmt, ast.Assign):
            targets, value = stmt.targets, stmt.value
        elif isinstance(stmt, ast.AnnAssign) and stmt.value is not None:
            targets, value = [stmt.target], stmt.value
        elif isinstance(stmt, ast.AugAssign):
            if isinstance(stmt.target, ast.Name) and stmt.target.id == "__all__":
                extra = _literal_names(stmt.value)
                if all_names is not None and extra is not None:
                    all_names.update(extra)
            continue
        else:
            continue

        for target in targets:
            if not isinstance(target, ast.Name):
                continue
            if target.id == "__all__":
                names = _literal_names(value)
                all_names = set(names) if names is not None else None
            elif target.id == DEFAULT_EXPORT_NAME:
                default_name = value.id if isinstance(value, ast.Name) else None

    return all_names, default_name


def discover_file(path: Path, config: JobsmithConfig) -> list[CandidateJob]:
    """
    Extract candidate jobs from one source file.

    Args:
        path: Job source file
        config: Supplies the decorator names

    Returns:
        One CandidateJob per top-level class carrying the job decorator,
        in declaration order

    Raises:
        DiscoveryError: If the file cannot be parsed or a marker argument
            is not a string literal
    """
    _, tree = parse_source(path)
    all_names, default_name = module_exports(tree)

    found = []
    for stmt in tree.body:
        if not isinstance(stmt, ast.ClassDef):
            continue

        job_marker = None
        group_marker = None
        for decorator in stmt.decorator_list:
            marker = read_marker(decorator, config.job_decorator, path, stmt.name)
            if marker is not None:
                job_marker = marker
                continue
            marker = read_marker(decorator, config.group_decorator, path, stmt.name)
            if marker is not None:
                group_marker = marker
        if job_marker is None:
            continue

        job_id = job_marker.value if job_marker.kind == MarkerKind.WITH_ARG else stmt.name
        group_name = (
            group_marker.value
            if group_marker is not None and group_marker.kind == MarkerKind.WITH_ARG
            else None
        )
        is_default = default_name == stmt.name
        if all_names is not None:
            is_named = stmt.name in all_names
        else:
            is_named = not stmt.name.startswith("_")

        found.append(CandidateJob(
            source_file=path,
            class_name=stmt.name,
            job_id=job_id,
            is_default_exported=is_default,
            is_exported=is_default or is_named,
            group_name=group_name,
        ))

    logger.debug(
        f"Discovered {len(found)} job(s) in {relative_to_root(path, config.project_root)}"
    )
    return found


def discover_jobs(config: JobsmithConfig, files: Optional[list[Path]] = None) -> list[CandidateJob]:
    """
    Discover all candidate jobs of a build pass.

    Files are parsed concurrently; results keep sorted file order so the
    outcome is reproducible.

    Raises:
        DiscoveryError: If any file fails, or no decorated classes exist
    """
    if files is None:
        files = find_job_files(config)

    with ThreadPoolExecutor(max_workers=config.workers) as pool:
        per_file = list(pool.map(lambda p: discover_file(p, config), files))

    jobs = [candidate for found in per_file for candidate in found]
    if not jobs:
        raise DiscoveryError(
            f"No decorated @{config.job_decorator} classes found in {len(files)} file(s). "
            f"Ensure your job class is decorated with @{config.job_decorator}."
        )

    logger.info(f"Discovered {len(jobs)} job(s) in {len(files)} file(s)")
    return jobs
