# Python form of a pipeline: `dagci run --workflow examples/dagci_workflow.py`
from __future__ import annotations

from dagci import job, matrix, sh, uses, wf

TRIGGERS = {
    "push": {"branches": ["main"]},
    "pull_request": {"types": ["opened", "reopened", "synchronize"]},
}

PIPELINE = wf(
    job(
        "lint",
        uses("actions/checkout@main"),
        sh("Ruff check", "ruff check ."),
        cache_paths=[".ruff_cache"],
        cache_key_files=["pyproject.toml"],
        cache_toolchain=["ruff"],
    ),
    matrix("python", ["3.11", "3.12"]).jobs(
        lambda v: job(
            f"test-py{v}",
            uses("actions/checkout@main"),
            sh("Install", f"python{v} -m pip install -e '.[test]'"),
            sh("Pytest", f"python{v} -m pytest -q"),
            needs=["lint"],
            timeout=900,
        )
    ),
    job(
        "docs",
        uses("actions/checkout@main"),
        sh("Check README", "test -f README.md"),
        optional=True,
    ),
    name="dagci",
)
