"""Allow ``python -m jobsmith``."""

from jobsmith.cli import main

main(prog_name="jobsmith")
