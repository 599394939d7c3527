from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from dagci.cli import cli


def pipeline(**jobs):
    return {
        "name": "demo",
        "on": {
            "push": {"branches": ["main"]},
            "pull_request": {"types": ["opened", "repoened", "synchronize"]},
        },
        "jobs": jobs,
    }


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    def write(data, name="dagci.json"):
        (tmp_path / name).write_text(json.dumps(data))
        return tmp_path

    return write


def invoke(*args):
    return CliRunner().invoke(cli, list(args))


RUN = ("run", "--cache-dir", ".c", "--work-dir", ".w")


def test_run_success(project):
    project(pipeline(
        build={"steps": [{"run": "echo built"}]},
        test={"needs": ["build"], "steps": [{"run": "true"}]},
    ))
    result = invoke(*RUN, "--workers", "2")
    assert result.exit_code == 0, result.output
    assert "RUN SUCCEEDED" in result.output
    assert "build: SUCCEEDED" in result.output


def test_run_failure_exit_code(project):
    project(pipeline(build={"steps": [{"name": "compile", "run": "exit 4"}]}, test={"needs": "build", "steps": [{"run": "true"}]}))
    result = invoke(*RUN)
    assert result.exit_code == 1
    assert "RUN FAILED" in result.output
    assert "test: SKIPPED" in result.output
    assert "exit=4" in result.output


def test_cycle_is_a_config_error(project):
    project(pipeline(
        a={"needs": ["b"], "steps": [{"run": "true"}]},
        b={"needs": ["a"], "steps": [{"run": "true"}]},
    ))
    result = invoke(*RUN)
    assert result.exit_code == 2
    assert "cycle" in result.output


def test_invalid_document_exit_code(project):
    project({"jobs": {"a": {"steps": [{"name": "nothing"}]}}})
    assert invoke(*RUN).exit_code == 2
    assert invoke("check").exit_code == 2


def test_missing_workflow(project):
    project({}, name="unrelated.json")
    result = invoke(*RUN)
    assert result.exit_code == 2
    assert "No workflow file found" in result.output


def test_rejected_event_does_not_run(project, tmp_path):
    project(pipeline(build={"steps": [{"run": "touch ran"}]}))
    result = invoke(*RUN, "--in-place", "--event", "push", "--branch", "feature")
    assert result.exit_code == 0
    assert "TRIGGER REJECTED" in result.output
    assert not (tmp_path / "ran").exists()


def test_admitted_event_runs_in_place(project, tmp_path):
    project(pipeline(build={"steps": [{"run": "touch ran"}]}))
    result = invoke(*RUN, "--in-place", "--event", "push", "--branch", "main")
    assert result.exit_code == 0, result.output
    assert "TRIGGER ADMITTED" in result.output
    assert (tmp_path / "ran").exists()


def test_run_only_selected_job_and_its_needs(project, tmp_path):
    project(pipeline(
        a={"steps": [{"run": "touch a"}]},
        b={"needs": ["a"], "steps": [{"run": "touch b"}]},
        c={"steps": [{"run": "touch c"}]},
    ))
    result = invoke(*RUN, "--in-place", "--job", "b")
    assert result.exit_code == 0, result.output
    assert (tmp_path / "a").exists()
    assert (tmp_path / "b").exists()
    assert not (tmp_path / "c").exists()


def test_check_prints_plan_and_warns_about_typo(project):
    project(pipeline(
        lint={"steps": [{"run": "true"}]},
        test={"needs": ["lint"], "steps": [{"run": "true"}]},
    ))
    result = invoke("check")
    assert result.exit_code == 0
    assert "Stage 1: lint" in result.output
    assert "Stage 2: test" in result.output
    assert "repoened" in result.output
    assert "OK" in result.output


def test_trigger_reopened_is_rejected(project):
    project(pipeline(lint={"steps": [{"run": "true"}]}))
    result = invoke("trigger", "--event", "pull_request", "--action", "reopened", "--branch", "main")
    assert result.exit_code == 1
    assert "REJECTED" in result.output
    assert "repoened" in result.output


def test_trigger_opened_is_admitted(project):
    project(pipeline(lint={"steps": [{"run": "true"}]}))
    result = invoke("trigger", "--event", "pull_request", "--action", "opened", "--branch", "main")
    assert result.exit_code == 0
    assert "ADMITTED" in result.output


def test_rejected_event_announces_no_run(project):
    project(pipeline(build={"steps": [{"run": "true"}]}))
    result = invoke(*RUN, "--event", "push", "--branch", "feature")
    assert "TRIGGER REJECTED" in result.output
    assert "RUN STARTED" not in result.output


def test_admitted_event_is_reported_before_the_run(project):
    project(pipeline(build={"steps": [{"run": "true"}]}))
    result = invoke(*RUN, "--event", "push", "--branch", "main")
    assert result.exit_code == 0, result.output
    assert result.output.index("TRIGGER ADMITTED") < result.output.index("RUN STARTED")
    assert result.output.count("TRIGGER ADMITTED") == 1
