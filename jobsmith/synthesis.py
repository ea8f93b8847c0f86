"""
Entry synthesis - build minimal, self-contained entry modules.

For a single job the entry module holds:
1. a generated-file marker comment
2. the job file's imports, reduced to the names the class actually uses,
   with relative imports rewritten to absolute module paths
3. module-level statements of the job file binding names the class depends
   on (all of them, in source order, conditional imports included)
4. the class source, verbatim (decorators included)
5. ``default = ClassName``

For a group the entry module imports every source file of the group once
and exposes a ``JOBS`` registry keyed by job id.

Referenced names are found with ``symtable`` (scope-aware: names bound
inside the class never count) or, with the "text" strategy, by whole-word
search (cheaper, but keeps imports mentioned only in strings or comments).
"""

import ast
import builtins
import copy
import logging
import re
import symtable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from jobsmith.config import JobsmithConfig
from jobsmith.discovery import DEFAULT_EXPORT_NAME, parse_source
from jobsmith.errors import DiscoveryError, SynthesisError
from jobsmith.schemas import ValidatedJob
from jobsmith.utils import relative_to_root

logger = logging.getLogger(__name__)

# Module attribute of a group entry holding the job registry
REGISTRY_NAME = "JOBS"

GENERATED_MARKER = "# generated by jobsmith"

# Names every module can read without binding them
AMBIENT_NAMES = frozenset(dir(builtins)) | {
    "__name__", "__doc__", "__file__", "__spec__", "__loader__",
    "__package__", "__builtins__", "__annotations__", "__cached__",
}


@dataclass(frozen=True)
class ImportedName:
    """One alias of an import statement (``a.b``, ``x as y``)."""
    name: str
    asname: Optional[str] = None


@dataclass(frozen=True)
class ImportRecord:
    """
    A top-level import statement.

    Attributes:
        module: Imported module for ``from`` imports (None for ``from . import x``)
        level: Number of leading dots of a relative ``from`` import
        names: Aliases in declaration order
        is_from: True for ``from m import ...``, False for ``import m``
    """
    module: Optional[str]
    level: int
    names: tuple[ImportedName, ...]
    is_from: bool

    @property
    def is_future(self) -> bool:
        return self.is_from and self.module == "__future__"

    @property
    def is_star(self) -> bool:
        return self.is_from and any(n.name == "*" for n in self.names)

    def local_name(self, alias: ImportedName) -> str:
        """Name the alias binds in the importing module."""
        if alias.asname:
            return alias.asname
        if self.is_from:
            return alias.name
        return alias.name.split(".")[0]

    def local_names(self) -> set[str]:
        if self.is_star:
            return set()
        return {self.local_name(a) for a in self.names}


@dataclass
class EntryModule:
    """
    A synthesized entry module, keyed for the bundler.

    Attributes:
        key: "jobs/<job_id>" or "groups/<group_name>"
        source: Module text
        job_ids: Jobs this entry serves
        path: Where the module was written (set by write_entry)
    """
    key: str
    source: str
    job_ids: list[str] = field(default_factory=list)
    path: Optional[Path] = None


def _import_record(stmt: ast.stmt) -> ImportRecord:
    names = tuple(ImportedName(a.name, a.asname) for a in stmt.names)
    if isinstance(stmt, ast.Import):
        return ImportRecord(module=None, level=0, names=names, is_from=False)
    return ImportRecord(module=stmt.module, level=stmt.level or 0, names=names, is_from=True)


def collect_imports(tree: ast.Module) -> list[ImportRecord]:
    """Collect the top-level import statements of a module."""
    return [
        _import_record(stmt) for stmt in tree.body
        if isinstance(stmt, (ast.Import, ast.ImportFrom))
    ]


def _statement_span(lines: list[str], stmt: ast.stmt) -> str:
    """Source lines of a top-level statement, decorators included."""
    start = stmt.lineno
    for decorator in getattr(stmt, "decorator_list", []):
        start = min(start, decorator.lineno)
    return "".join(lines[start - 1:stmt.end_lineno]).rstrip() + "\n"


def locate_class_span(text: str, tree: ast.Module, class_name: str, path: Path) -> str:
    """
    Return the exact source of top-level class ``class_name``.

    Raises:
        SynthesisError: If the class is not declared at top level
    """
    lines = text.splitlines(keepends=True)
    for stmt in tree.body:
        if isinstance(stmt, ast.ClassDef) and stmt.name == class_name:
            return _statement_span(lines, stmt)
    raise SynthesisError(f"Unable to locate class {class_name} in {path}")


def bound_names(stmt: ast.stmt) -> set[str]:
    """
    Module-level names a top-level statement binds.

    Covers compound statements too: ``try``/``if``/``with``/``for`` bodies
    bind into the module namespace, so ``try: import ujson as json`` binds
    ``json``. Function and class bodies are their own scopes and are not
    entered.
    """
    names: set[str] = set()
    stack: list[ast.AST] = [stmt]
    while stack:
        node = stack.pop()
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(node.name)
            continue
        if isinstance(node, (ast.Lambda, ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp)):
            continue
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            names |= _import_record(node).local_names()
            continue
        if isinstance(node, ast.AnnAssign) and node.value is None:
            continue
        if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Store):
            names.add(node.id)
        elif isinstance(node, ast.ExceptHandler) and node.name:
            names.add(node.name)
        stack.extend(ast.iter_child_nodes(node))
    return names


def top_level_definitions(tree: ast.Module) -> dict[str, list[ast.stmt]]:
    """
    Map names bound by top-level statements (other than plain imports) to
    every statement binding them, in source order.
    """
    definitions: dict[str, list[ast.stmt]] = {}
    for stmt in tree.body:
        if isinstance(stmt, (ast.Import, ast.ImportFrom)):
            continue
        for name in bound_names(stmt):
            definitions.setdefault(name, []).append(stmt)
    for reserved in ("__all__", DEFAULT_EXPORT_NAME):
        definitions.pop(reserved, None)
    return definitions


def _has_imports(stmt: ast.stmt) -> bool:
    stack: list[ast.AST] = [stmt]
    while stack:
        node = stack.pop()
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            return True
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            continue
        stack.extend(ast.iter_child_nodes(node))
    return False


def free_names(source: str) -> set[str]:
    """
    Names ``source`` reads from its module namespace without binding them.

    Uses the compiler's own symbol tables: a name counts when it is read at
    module level, or read as a global from any nested function or class
    scope, and is not bound at module level of ``source``.
    """
    try:
        top = symtable.symtable(source, "<entry>", "exec")
    except SyntaxError as e:
        raise SynthesisError(f"Cannot analyse extracted source: {e}") from e

    bound = set()
    names = set()
    for sym in top.get_symbols():
        if sym.is_assigned() or sym.is_imported():
            bound.add(sym.get_name())
        if sym.is_referenced():
            names.add(sym.get_name())

    stack = list(top.get_children())
    while stack:
        table = stack.pop()
        for sym in table.get_symbols():
            if sym.is_global() and sym.is_referenced():
                names.add(sym.get_name())
        stack.extend(table.get_children())

    return names - bound


def referenced_names(source: str, candidates: set[str], strategy: str = "scope") -> set[str]:
    """
    Which of ``candidates`` does ``source`` reference?

    Args:
        source: Extracted source text
        candidates: Names that could be satisfied from outside the text
        strategy: "scope" (symtable) or "text" (whole-word search)
    """
    if strategy == "text":
        return {
            name for name in candidates
            if re.search(rf"(?<![\w.]){re.escape(name)}\b", source)
        }
    return free_names(source) & candidates


def resolve_module(record: ImportRecord, source_file: Path, source_root: Path) -> Optional[str]:
    """
    Absolute module path of a ``from`` import as seen from ``source_file``.

    Relative imports are resolved against the file's package (its
    directory relative to ``source_root``). Returns None for ``from . import x``
    when the package is the source root itself.

    Raises:
        SynthesisError: If the file is outside the source root, or the
            import climbs above it
    """
    if record.level == 0:
        return record.module

    try:
        package = list(source_file.parent.relative_to(source_root).parts)
    except ValueError:
        raise SynthesisError(
            f"{source_file} is outside the source root {source_root}; "
            f"cannot rewrite its relative imports"
        )

    climb = record.level - 1
    if climb > len(package):
        dots = "." * record.level
        raise SynthesisError(
            f"Relative import '{dots}{record.module or ''}' in {source_file} "
            f"climbs above the source root {source_root}"
        )

    parts = package[:len(package) - climb]
    if record.module:
        parts.extend(record.module.split("."))
    return ".".join(parts) if parts else None


def _format_alias(alias: ImportedName) -> str:
    return f"{alias.name} as {alias.asname}" if alias.asname else alias.name


def render_import(record: ImportRecord, aliases: list[ImportedName], module: Optional[str]) -> list[str]:
    """Render a (reduced) import statement with ``module`` already resolved."""
    joined = ", ".join(_format_alias(a) for a in aliases)
    if not record.is_from:
        return [f"import {joined}"]
    if module is None:
        # ``from . import a`` at the source root: each name is a top-level module
        return [f"import {_format_alias(a)}" for a in aliases]
    return [f"from {module} import {joined}"]


def reduce_imports(
    imports: list[ImportRecord],
    needed: set[str],
    source_file: Path,
    source_root: Path,
) -> tuple[list[str], list[str]]:
    """
    Rebuild the import section keeping only the needed specifiers.

    ``__future__`` and star imports are always kept. Imports with no
    surviving specifier are dropped.

    Returns:
        (future import lines, other import lines)
    """
    future_lines: list[str] = []
    lines: list[str] = []
    for record in imports:
        if record.is_future:
            future_lines.extend(render_import(record, list(record.names), record.module))
            continue
        if record.is_star:
            kept = list(record.names)
        else:
            kept = [a for a in record.names if record.local_name(a) in needed]
        if not kept:
            continue
        module = resolve_module(record, source_file, source_root) if record.is_from else None
        lines.extend(render_import(record, kept, module))
    return future_lines, lines


class _NestedImportReducer(ast.NodeTransformer):
    """Reduce and rewrite the imports inside a carried compound statement."""

    def __init__(self, needed: set[str], source_file: Path, source_root: Path):
        self.needed = needed
        self.source_file = source_file
        self.source_root = source_root

    def _own_scope(self, node):
        return node

    visit_FunctionDef = visit_AsyncFunctionDef = visit_ClassDef = visit_Lambda = _own_scope

    def visit_Import(self, node):
        record = _import_record(node)
        if record.is_future:
            return node
        if record.is_star:
            kept = list(record.names)
        else:
            kept = [a for a in record.names if record.local_name(a) in self.needed]
        if not kept:
            return ast.Pass()
        module = resolve_module(record, self.source_file, self.source_root) if record.is_from else None
        return ast.parse("\n".join(render_import(record, kept, module))).body

    visit_ImportFrom = visit_Import


def render_statement(
    lines: list[str],
    stmt: ast.stmt,
    needed: set[str],
    source_file: Path,
    source_root: Path,
) -> str:
    """
    Source of a carried top-level statement.

    Statements without imports are copied verbatim. Compound statements
    holding imports (``try: import ujson as json``) are regenerated with
    those imports reduced and made absolute.
    """
    if not _has_imports(stmt):
        return _statement_span(lines, stmt)
    # Names the statement reads itself (``json = ujson``) keep their imports too
    read_here = {
        node.id for node in ast.walk(stmt)
        if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Load)
    }
    reducer = _NestedImportReducer(needed | read_here, source_file, source_root)
    reduced = reducer.visit(copy.deepcopy(stmt))
    return ast.unparse(ast.fix_missing_locations(reduced)) + "\n"


def _has_star_import(tree: ast.Module) -> bool:
    return any(
        isinstance(node, ast.ImportFrom) and any(a.name == "*" for a in node.names)
        for node in ast.walk(tree)
    )


def synthesize_job(job: ValidatedJob, config: JobsmithConfig) -> EntryModule:
    """
    Synthesize the entry module of a single job.

    Raises:
        SynthesisError: If the class cannot be located again, its imports
            cannot be rewritten, or it uses a name its module never binds
    """
    try:
        text, tree = parse_source(job.source_file)
    except DiscoveryError as e:
        raise SynthesisError(
            f"Unable to re-read class {job.class_name} in {job.source_file}: {e}"
        ) from e

    class_span = locate_class_span(text, tree, job.class_name, job.source_file)
    lines = text.splitlines(keepends=True)
    imports = collect_imports(tree)
    import_locals = set().union(*(r.local_names() for r in imports))
    definitions = top_level_definitions(tree)
    definitions.pop(job.class_name, None)
    candidates = import_locals | set(definitions)

    # Walk helpers transitively: each carried statement can pull in more
    needed: set[str] = set()
    unresolved: set[str] = set()
    carried: dict[int, ast.stmt] = {}
    pending = [class_span]
    while pending:
        span = pending.pop()
        refs = referenced_names(span, candidates, config.reference_strategy)
        needed |= refs
        unresolved |= free_names(span) - candidates
        for name in sorted(refs & set(definitions)):
            for stmt in definitions[name]:
                if id(stmt) not in carried:
                    carried[id(stmt)] = stmt
                    pending.append(_statement_span(lines, stmt))

    unresolved -= AMBIENT_NAMES | {job.class_name}
    if unresolved and not _has_star_import(tree):
        raise SynthesisError(
            f"Class {job.class_name} in {job.source_file} uses names its module "
            f"never binds: {', '.join(sorted(unresolved))}"
        )

    future_lines, import_lines = reduce_imports(
        imports, needed, job.source_file, config.source_root
    )
    helpers = [
        render_statement(lines, s, needed, job.source_file, config.source_root)
        for s in sorted(carried.values(), key=lambda s: s.lineno)
    ]

    origin = relative_to_root(job.source_file, config.project_root)
    parts = [f"{GENERATED_MARKER} for {job.job_id} from {origin}\n"]
    header = future_lines + import_lines
    if header:
        parts.append("\n".join(header) + "\n\n")
    for helper in helpers:
        parts.append(helper + "\n\n")
    parts.append(class_span)
    parts.append(f"\n\n{DEFAULT_EXPORT_NAME} = {job.class_name}\n")

    logger.debug(
        f"Synthesized entry for {job.job_id}: kept {len(import_lines)} import(s), "
        f"{len(helpers)} helper(s)",
        extra={"job_id": job.job_id, "event": "entry_synthesized"},
    )
    return EntryModule(key=f"jobs/{job.job_id}", source="".join(parts), job_ids=[job.job_id])


def module_name_for(path: Path, source_root: Path) -> str:
    """
    Dotted module name of a source file under the source root.

    Raises:
        SynthesisError: If the file is outside the root or not importable
    """
    try:
        relative = path.relative_to(source_root).with_suffix("")
    except ValueError:
        raise SynthesisError(f"{path} is outside the source root {source_root}")
    parts = list(relative.parts)
    if parts and parts[-1] == "__init__":
        parts.pop()
    if not parts or not all(p.isidentifier() for p in parts):
        raise SynthesisError(f"{path} is not importable as a module from {source_root}")
    return ".".join(parts)


def render_group_module(group_name: str, jobs: list[ValidatedJob], config: JobsmithConfig) -> EntryModule:
    """
    Synthesize the entry module of a group.

    Each distinct source file is imported once, in first-seen order, and
    the ``JOBS`` registry maps every job id to its class.
    """
    aliases: dict[Path, str] = {}
    import_lines = []
    for j in jobs:
        if j.source_file not in aliases:
            alias = f"_src{len(aliases)}"
            aliases[j.source_file] = alias
            import_lines.append(
                f"import {module_name_for(j.source_file, config.source_root)} as {alias}"
            )

    registry_lines = []
    for j in jobs:
        attribute = DEFAULT_EXPORT_NAME if j.is_default_exported else j.class_name
        registry_lines.append(f"    {j.job_id!r}: {aliases[j.source_file]}.{attribute},")

    source = (
        f"{GENERATED_MARKER} for group {group_name}\n"
        + "\n".join(import_lines)
        + "\n\n\n"
        + f"{REGISTRY_NAME} = {{\n"
        + "\n".join(registry_lines)
        + "\n}\n"
    )
    return EntryModule(
        key=f"groups/{group_name}",
        source=source,
        job_ids=[j.job_id for j in jobs],
    )


def write_entry(entry: EntryModule, scratch_dir: Path) -> Path:
    """Write an entry module under the scratch directory (overwrites)."""
    path = scratch_dir / f"{entry.key}.py"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(entry.source, encoding="utf-8")
    entry.path = path
    return path
