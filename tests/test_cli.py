import json
import shutil
import textwrap

import pytest
from click.testing import CliRunner

from ciengine.cli import EXIT_CONFIG, EXIT_FAILED, cli

needs_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")

WORKFLOW = textwrap.dedent(
    """
    name: CI
    on:
      pull_request:
        types: [opened, synchronize]
    concurrency:
      group: ${{ github.workflow }}-${{ github.ref }}
      cancel-in-progress: true
    jobs:
      build:
        strategy:
          matrix:
            python: ["3.11", "3.12"]
        steps:
          - id: greet
            run: echo "python=${{ matrix.python }}" >> "$CI_OUTPUT"
          - uses: ./actions/check
            with:
              python: ${{ steps.greet.outputs.python }}
      publish:
        needs: build
        steps:
          - uses: actions/upload-artifact@v4
            with:
              name: dist
    """
)

CHECK_ACTION = textwrap.dedent(
    """
    name: check
    inputs:
      python:
        required: true
    runs:
      using: composite
      steps:
        - run: test -n "${{ inputs.python }}"
    """
)


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "ci.yml").write_text(WORKFLOW, encoding="utf-8")
    action = tmp_path / "actions" / "check"
    action.mkdir(parents=True)
    (action / "action.yml").write_text(CHECK_ACTION, encoding="utf-8")
    return tmp_path


def invoke(workspace, *args):
    return CliRunner().invoke(
        cli,
        [
            "run",
            "--workflow", str(workspace / "ci.yml"),
            "--workspace", str(workspace),
            "--cache-dir", str(workspace / "cache"),
            "--ref", "refs/pull/1/merge",
            *args,
        ],
    )


@needs_bash
def test_run_succeeds_with_stubbed_external_actions(workspace):
    result = invoke(workspace, "--event", "pull_request", "--subtype", "opened", "--external", "stub", "--json")

    assert result.exit_code == 0, result.output
    outcome = json.loads(result.stdout)
    assert outcome["status"] == "succeeded"
    assert outcome["concurrency_key"] == "CI-refs/pull/1/merge"
    assert [j["name"] for j in outcome["jobs"]] == ["build (3.11)", "build (3.12)", "publish"]
    assert outcome["jobs"][0]["steps"][0]["outputs"] == {"python": "3.11"}


@needs_bash
def test_run_fails_when_external_actions_cannot_run(workspace):
    result = invoke(workspace, "--event", "pull_request", "--subtype", "opened", "--json")

    assert result.exit_code == EXIT_FAILED
    outcome = json.loads(result.stdout)
    assert outcome["status"] == "failed"
    publish = outcome["jobs"][-1]
    assert publish["status"] == "failed"
    assert "no runner configured" in publish["steps"][0]["error"]


def test_event_that_does_not_trigger(workspace):
    result = invoke(workspace, "--event", "pull_request", "--subtype", "closed", "--json")

    assert result.exit_code == EXIT_FAILED
    assert json.loads(result.stdout) == {"triggered": False}


def test_invalid_workflow_exits_with_config_code(tmp_path):
    bad = tmp_path / "bad.yml"
    bad.write_text("on: push\njobs:\n  a:\n    steps: []\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["run", "--workflow", str(bad), "--event", "push", "--workspace", str(tmp_path)])

    assert result.exit_code == EXIT_CONFIG
    assert "Invalid workflow" in result.output


def test_plan_lists_instances_by_level(workspace):
    result = CliRunner().invoke(cli, ["plan", "--workflow", str(workspace / "ci.yml")])

    assert result.exit_code == 0, result.output
    assert "PLAN: CI" in result.output
    assert "cancel-in-progress=true" in result.output
    level0, level1 = result.output.split("Level 1:")
    assert "build (3.11)" in level0 and "build (3.12)" in level0
    assert "publish" in level1


def test_validate_resolves_actions(workspace):
    result = CliRunner().invoke(
        cli,
        [
            "validate",
            "--workflow", str(workspace / "ci.yml"),
            "--workspace", str(workspace),
            "--cache-dir", str(workspace / "cache"),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "OK: CI (2 job(s), 3 action reference(s) resolved)" in result.output


def test_validate_reports_missing_local_action(workspace):
    shutil.rmtree(workspace / "actions")
    result = CliRunner().invoke(
        cli,
        ["validate", "--workflow", str(workspace / "ci.yml"), "--workspace", str(workspace)],
    )

    assert result.exit_code == EXIT_CONFIG
    assert "local action not found" in result.output
