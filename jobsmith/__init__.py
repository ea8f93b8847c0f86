"""
jobsmith - Build and run self-contained job artifacts.

Discovers @job-decorated classes in a source tree, synthesizes a minimal
entry module per job (or per group of jobs), bundles each into a .pyz
archive, and resolves/executes those archives by job id.

Only the markers are exported here so decorated job sources can import
``jobsmith`` without pulling in the build tooling.
"""

from .markers import job, group

__version__ = "0.1.0"

__all__ = ["job", "group", "__version__"]
