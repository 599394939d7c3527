from __future__ import annotations

import pytest

from dagci import build, job, matrix, sh, uses, wf
from dagci.model import ActionStep, CommandStep


def test_job_applies_default_cwd_to_command_steps_only():
    j = job("a", sh("x", "make"), sh("y", "ls", cwd="docs"), uses("checkout"), cwd="src")
    x, y, co = j.steps
    assert x.cwd == "src"
    assert y.cwd == "docs"
    assert isinstance(co, ActionStep)


def test_job_cache_options():
    j = job("a", sh("x", "true"), cache_paths=["target"], cache_key_files=["Cargo.lock"], cache_keep=1)
    assert j.cache.paths == ["target"]
    assert j.cache.key_files == ["Cargo.lock"]
    assert j.cache.keep == 1
    assert job("b", sh("x", "true")).cache is None


def test_job_needs_steps():
    with pytest.raises(ValueError):
        job("empty")


def test_uses_collects_params():
    step = uses("actions/checkout@v4", path="sub", id="co")
    assert step.with_ == {"path": "sub"}
    assert step.id == "co"
    assert step.name == "Run actions/checkout@v4"


def test_builder():
    j = (
        build("test")
        .depends_on("lint")
        .runs_on("ubuntu-latest")
        .use_action("checkout")
        .define_step("unit", "make test")
        .with_env(N=2)
        .with_timeout(60)
        .allow_failure()
        .cache("target", key_files=["Cargo.lock"])
        .build()
    )
    assert j.needs == ["lint"]
    assert j.runs_on == "ubuntu-latest"
    assert isinstance(j.steps[1], CommandStep)
    assert j.env == {"N": "2"}
    assert j.timeout == 60
    assert j.optional
    assert j.cache.paths == ["target"]


def test_matrix_jobs_flatten_into_pipeline():
    p = wf(
        job("lint", sh("x", "true")),
        matrix("target", ["x86", "wasm"]).jobs(lambda t: job(f"build-{t}", sh("b", f"build {t}"), needs=["lint"])),
        name="ci",
    )
    assert p.name == "ci"
    assert p.job_names() == ["lint", "build-x86", "build-wasm"]
