"""
Bundler - turn entry modules into self-contained .pyz archives.

One archive is written per entry key (``<out_dir>/<key>.pyz``) and holds:
- the entry module, as ``_jobsmith_entry.py``
- every module of the source tree reachable from it through imports
  (package ``__init__.py`` files included; missing ones are written empty)
- the files of every force-inlined distribution and its requirements
- ``jobsmith-build.json`` describing the build

The standard library and the configured externals are never inlined;
they are resolved by the host interpreter when the archive is loaded.
Archives share nothing with each other, so each one deploys on its own.
"""

import ast
import json
import logging
import os
import re
import shutil
import sys
import tomllib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from importlib import metadata
from pathlib import Path, PurePath
from typing import Iterator, Optional
from zipfile import ZIP_DEFLATED, ZipFile

from packaging.requirements import InvalidRequirement, Requirement

from jobsmith.errors import BundlingError

logger = logging.getLogger(__name__)

# Module name of the entry inside every archive
ENTRY_MODULE = "_jobsmith_entry"

BUILD_INFO_NAME = "jobsmith-build.json"

ARTIFACT_SUFFIX = ".pyz"

# Always provided by the host: the runner itself is jobsmith
HOST_PROVIDED = ("jobsmith",)

# Output subdirectories owned by the bundler (cleaned on every bundle)
ARTIFACT_DIRS = ("jobs", "groups")

# Compiled extensions: zipimport cannot load these from an archive
NATIVE_SUFFIXES = (".so", ".pyd", ".dylib")


@dataclass
class BundleOptions:
    """
    Everything the bundler needs for one pass.

    Attributes:
        entries: Entry key ("jobs/<id>", "groups/<name>") -> entry module file
        output_dir: Artifacts are written to ``output_dir/<key>.pyz``
        source_root: Import root used to resolve local modules
        target: Minimum Python version ("3.11") recorded in each archive
        externals: Top-level modules / distributions never inlined
        force_inlined: Distribution names inlined into every archive
    """
    entries: dict[str, Path]
    output_dir: Path
    source_root: Path
    target: str
    externals: list[str] = field(default_factory=list)
    force_inlined: list[str] = field(default_factory=list)


@dataclass
class InlinedDistribution:
    """An installed distribution copied into archives."""
    name: str
    version: str
    files: list[tuple[str, Path]] = field(default_factory=list)
    top_level: set[str] = field(default_factory=set)


class Bundler(ABC):
    """Bundling engine interface used by the builder."""

    @abstractmethod
    def bundle(self, options: BundleOptions) -> dict[str, Path]:
        """
        Produce one artifact per entry.

        Returns:
            Entry key -> artifact path

        Raises:
            BundlingError: If any artifact cannot be produced
        """
        pass


def _normalize(name: str) -> str:
    return re.sub(r"[-_.]+", "-", name).lower()


def read_declared_dependencies(project_root: Path) -> list[str]:
    """
    Distribution names declared in ``[project].dependencies`` of
    ``project_root/pyproject.toml`` (empty when there is no pyproject).
    """
    pyproject = project_root / "pyproject.toml"
    if not pyproject.exists():
        return []
    try:
        with open(pyproject, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise BundlingError(f"Invalid pyproject.toml at {pyproject}: {e}") from e

    names = []
    for text in data.get("project", {}).get("dependencies", []):
        try:
            requirement = Requirement(text)
        except InvalidRequirement as e:
            raise BundlingError(f"Invalid dependency '{text}' in {pyproject}: {e}") from e
        if _applies(requirement):
            names.append(requirement.name)
    return names


def _applies(requirement: Requirement) -> bool:
    """Whether a requirement is needed by this interpreter (extras never are)."""
    return requirement.marker is None or requirement.marker.evaluate({"extra": ""})


def _is_native(path: PurePath) -> bool:
    return any(suffix in NATIVE_SUFFIXES for suffix in path.suffixes)


def read_build_info(artifact: Path) -> dict:
    """Read the build description stored inside an archive."""
    with ZipFile(artifact) as zf:
        try:
            return json.loads(zf.read(BUILD_INFO_NAME))
        except KeyError:
            return {}


def archive_modules(artifact: Path) -> list[str]:
    """Dotted names of the Python modules contained in an archive."""
    names = []
    with ZipFile(artifact) as zf:
        for member in zf.namelist():
            if not member.endswith(".py"):
                continue
            parts = member[:-3].split("/")
            if parts[-1] == "__init__":
                parts.pop()
            if parts:
                names.append(".".join(parts))
    return names


class PyzBundler(Bundler):
    """Bundle entries into zip archives importable through ``zipimport``."""

    def bundle(self, options: BundleOptions) -> dict[str, Path]:
        externals = set(options.externals) | set(HOST_PROVIDED)
        inlined = resolve_distributions(options.force_inlined, externals)
        skip_top = externals | set(sys.stdlib_module_names)
        for dist in inlined:
            skip_top |= dist.top_level

        for sub in ARTIFACT_DIRS:
            target_dir = options.output_dir / sub
            if target_dir.exists():
                shutil.rmtree(target_dir)

        artifacts: dict[str, Path] = {}
        for key in sorted(options.entries):
            entry_path = options.entries[key]
            modules = collect_local_modules(entry_path, options.source_root, skip_top)
            artifact = options.output_dir / f"{key}{ARTIFACT_SUFFIX}"
            self._write_archive(artifact, key, entry_path, modules, inlined, options)
            artifacts[key] = artifact
            logger.debug(
                f"Bundled {key}: {len(modules)} local module(s), {len(inlined)} inlined distribution(s)"
            )

        return artifacts

    def _write_archive(
        self,
        artifact: Path,
        key: str,
        entry_path: Path,
        modules: dict[str, Path],
        inlined: list[InlinedDistribution],
        options: BundleOptions,
    ) -> None:
        artifact.parent.mkdir(parents=True, exist_ok=True)
        partial = artifact.with_name(artifact.name + ".partial")
        written: set[str] = set()

        try:
            with ZipFile(partial, "w", compression=ZIP_DEFLATED) as zf:
                zf.write(entry_path, f"{ENTRY_MODULE}.py")
                for arcname in sorted(modules):
                    zf.write(modules[arcname], arcname)
                    written.add(arcname)
                for init in sorted(_missing_package_inits(modules)):
                    zf.writestr(init, "")
                    written.add(init)
                for dist in inlined:
                    for arcname, source in dist.files:
                        if arcname not in written and source.is_file():
                            zf.write(source, arcname)
                            written.add(arcname)
                info = {
                    "entry": key,
                    "entry_module": ENTRY_MODULE,
                    "target": options.target,
                    "inlined": sorted(f"{d.name}=={d.version}" for d in inlined),
                    "externals": sorted(options.externals),
                }
                zf.writestr(BUILD_INFO_NAME, json.dumps(info, indent=2, sort_keys=True))
            os.replace(partial, artifact)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise BundlingError(f"Failed to write {artifact}: {e}") from e


def resolve_distributions(names: list[str], externals: set[str]) -> list[InlinedDistribution]:
    """
    Resolve distributions to inline, following their requirements.

    Requirements whose environment marker does not match this interpreter
    (``extra`` markers included) are skipped. A declared distribution that
    is not installed is an error; a missing transitive requirement is
    logged and left to the host.

    Raises:
        BundlingError: If a declared distribution is not installed, or a
            distribution to inline ships compiled extensions
    """
    excluded = {_normalize(n) for n in externals}
    declared = {_normalize(n) for n in names}
    resolved: dict[str, InlinedDistribution] = {}
    queue = list(names)

    while queue:
        name = queue.pop(0)
        key = _normalize(name)
        if key in resolved or key in excluded:
            continue
        try:
            dist = metadata.distribution(name)
        except metadata.PackageNotFoundError:
            if key in declared:
                raise BundlingError(
                    f"Dependency '{name}' is declared in pyproject.toml but not installed"
                )
            logger.warning(f"Requirement '{name}' is not installed; leaving it to the host")
            continue

        inlined = InlinedDistribution(name=dist.metadata["Name"] or name, version=dist.version)
        native = []
        for path in dist.files or []:
            if ".." in path.parts or "__pycache__" in path.parts or path.suffix == ".pyc":
                continue
            if _is_native(path):
                native.append(path.as_posix())
                continue
            inlined.files.append((path.as_posix(), Path(dist.locate_file(path))))
            first = path.parts[0]
            if first.endswith(".py"):
                inlined.top_level.add(first[:-3])
            elif "." not in first:
                inlined.top_level.add(first)
        if native:
            required = required_native_modules(inlined, native)
            if required:
                raise BundlingError(
                    f"Distribution '{inlined.name}' needs compiled extensions "
                    f"({', '.join(required)}) that cannot be imported from a .pyz "
                    f"archive; add it to 'externals' to leave it to the host"
                )
            logger.warning(
                f"Distribution '{inlined.name}' ships optional compiled extensions "
                f"({len(native)} file(s)); archives get its pure-Python fallback only"
            )
        if not inlined.top_level:
            logger.warning(
                f"Distribution '{inlined.name}' has no importable files "
                f"(editable install?); nothing to inline"
            )
        resolved[key] = inlined

        for text in dist.requires or []:
            try:
                requirement = Requirement(text)
            except InvalidRequirement:
                logger.warning(f"Skipping unparseable requirement '{text}' of {inlined.name}")
                continue
            if _applies(requirement):
                queue.append(requirement.name)

    return list(resolved.values())


def _package_of(arcname: str) -> Optional[str]:
    """Package a module archive name belongs to ("jobs/util.py" -> "jobs")."""
    # A package's __init__ and its sibling modules share the same package
    return ".".join(arcname.split("/")[:-1]) or None


def _imported_modules(path: Path, package: Optional[str]) -> Iterator[tuple[str, bool]]:
    """
    Modules a file imports, anywhere in the file.

    Yields:
        (dotted module name, required) - ``from pkg import name`` also yields
        ``pkg.name`` as not required, since ``name`` may be a submodule
    """
    try:
        tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    except (OSError, SyntaxError, UnicodeDecodeError) as e:
        raise BundlingError(f"Cannot read module {path}: {e}") from e

    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                yield alias.name, True
        elif isinstance(node, ast.ImportFrom):
            base = _from_base(node, package)
            if base is None:
                continue
            if base:
                yield base, True
            for alias in node.names:
                if alias.name != "*":
                    yield f"{base}.{alias.name}" if base else alias.name, not base


def _from_base(node: ast.ImportFrom, package: Optional[str]) -> Optional[str]:
    """Absolute module a ``from`` import reads from; None when it climbs out."""
    if not node.level:
        return node.module or ""
    if package is None:
        return None
    parts = package.split(".")
    climb = node.level - 1
    if climb > len(parts):
        return None
    parts = parts[:len(parts) - climb]
    if node.module:
        parts.extend(node.module.split("."))
    return ".".join(parts)


def _unguarded_imports(path: Path, package: Optional[str]) -> Iterator[str]:
    """Modules imported at module level outside any ``try`` (``if`` bodies count)."""
    try:
        tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    except (OSError, SyntaxError, UnicodeDecodeError) as e:
        logger.debug(f"Not scanning {path} for imports: {e}")
        return

    stack: list[ast.stmt] = list(tree.body)
    while stack:
        node = stack.pop()
        if isinstance(node, ast.If):
            stack.extend(node.body + node.orelse)
        elif isinstance(node, ast.Import):
            for alias in node.names:
                yield alias.name
        elif isinstance(node, ast.ImportFrom):
            base = _from_base(node, package)
            if not base:
                continue
            yield base
            for alias in node.names:
                if alias.name != "*":
                    yield f"{base}.{alias.name}"


def required_native_modules(dist: InlinedDistribution, native: list[str]) -> list[str]:
    """
    Compiled extension modules a distribution cannot work without.

    An extension is required when the top-level package containing it
    reaches it through imports that no ``try`` guards (any top-level
    package, for extensions outside a package). Extensions reached only
    behind ``try`` (PyYAML's libyaml binding) are optional accelerators
    with a pure-Python fallback.

    Args:
        dist: Distribution with its (non-native) files resolved
        native: Archive names of its compiled extension files

    Returns:
        Dotted names of the required extension modules, sorted
    """
    native_modules = set()
    for arcname in native:
        parts = arcname.split("/")
        parts[-1] = parts[-1].split(".")[0]
        native_modules.add(".".join(parts))

    sources: dict[str, tuple[Path, bool]] = {}
    for arcname, file in dist.files:
        if not arcname.endswith(".py"):
            continue
        parts = arcname[:-3].split("/")
        is_package = parts[-1] == "__init__"
        if is_package:
            parts.pop()
        if parts and all(p.isidentifier() for p in parts):
            sources[".".join(parts)] = (file, is_package)

    def reach(roots: list[str]) -> set[str]:
        reached: set[str] = set()
        pending = [name for name in roots if name in sources]
        while pending:
            name = pending.pop()
            if name in reached:
                continue
            reached.add(name)
            if name not in sources:
                continue
            file, is_package = sources[name]
            package = name if is_package else (name.rpartition(".")[0] or None)
            for imported in _unguarded_imports(file, package):
                if imported in sources or imported in native_modules:
                    pending.append(imported)
        return reached

    required = []
    for module in sorted(native_modules):
        top, _, rest = module.partition(".")
        roots = [top] if rest else sorted(dist.top_level)
        if module in reach(roots):
            required.append(module)
    return required


def _resolve_local(name: str, source_root: Path) -> Optional[list[tuple[str, Path]]]:
    """Archive entries for local module ``name`` and its parent packages."""
    parts = name.split(".")
    module_file = source_root.joinpath(*parts).with_suffix(".py")
    package_init = source_root.joinpath(*parts, "__init__.py")
    if module_file.is_file():
        target = ("/".join(parts) + ".py", module_file)
    elif package_init.is_file():
        target = ("/".join(parts) + "/__init__.py", package_init)
    else:
        return None

    files = []
    for i in range(1, len(parts)):
        init = source_root.joinpath(*parts[:i], "__init__.py")
        if init.is_file():
            files.append(("/".join(parts[:i]) + "/__init__.py", init))
    files.append(target)
    return files


def collect_local_modules(entry_path: Path, source_root: Path, skip_top: set[str]) -> dict[str, Path]:
    """
    Source-tree modules reachable from an entry module.

    Args:
        entry_path: The synthesized entry module
        source_root: Import root of local modules
        skip_top: Top-level names resolved elsewhere (stdlib, inlined, externals)

    Returns:
        Archive name ("jobs/util.py") -> file
    """
    found: dict[str, Path] = {}
    warned: set[str] = set()
    pending: list[tuple[Path, Optional[str]]] = [(entry_path, None)]

    while pending:
        path, package = pending.pop()
        for name, required in _imported_modules(path, package):
            top = name.split(".")[0]
            if top in skip_top:
                continue
            resolved = _resolve_local(name, source_root)
            if resolved is None:
                if required and top not in warned:
                    warned.add(top)
                    logger.warning(
                        f"Module '{name}' imported by {path.name} is not local, inlined or "
                        f"external; leaving it to the host interpreter"
                    )
                continue
            for arcname, file in resolved:
                if arcname not in found:
                    found[arcname] = file
                    pending.append((file, _package_of(arcname)))

    return found


def _missing_package_inits(modules: dict[str, Path]) -> set[str]:
    """``__init__.py`` entries needed so every local module sits in a regular package."""
    missing = set()
    for arcname in modules:
        parts = arcname.split("/")[:-1]
        for i in range(1, len(parts) + 1):
            init = "/".join(parts[:i]) + "/__init__.py"
            if init not in modules:
                missing.add(init)
    return missing
