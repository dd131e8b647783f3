import textwrap

import pytest

from ciengine.errors import ConfigError
from ciengine.loader import load_workflow, workflow_from_dict
from ciengine.model import ActionStep, CommandStep, TriggerRule

TEST_YML = textwrap.dedent(
    """
    name: Test

    on:
      pull_request:
        types:
          - opened
          - reopened
          - synchronize

    concurrency:
      group: ${{ github.workflow }}-${{ github.ref }}
      cancel-in-progress: true

    env:
      RUST_BACKTRACE: 1

    jobs:
      test:
        runs-on: ${{ matrix.os }}

        strategy:
          fail-fast: false
          matrix:
            os: [ubuntu-22.04]
            target: [x86_64-unknown-linux-gnu]

        env:
          SCCACHE_GHA_ENABLED: "true"
          RUSTC_WRAPPER: "sccache"

        steps:
          - uses: actions/checkout/@v4

          - name: Install cargo-binstall
            uses: taiki-e/install-action@v2
            with:
              tool: cargo-binstall

          - name: Install cargo-component
            run: cargo binstall cargo-component

          - name: Build
            uses: ./.github/actions/build
            with:
              target: ${{ matrix.target }}
              release: false
    """
)


def write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_load_yaml_workflow(tmp_path):
    wf = load_workflow(write(tmp_path, "test.yml", TEST_YML))

    assert wf.name == "Test"
    assert wf.triggers == (TriggerRule("pull_request", frozenset({"opened", "reopened", "synchronize"})),)
    assert wf.concurrency.group == "${{ github.workflow }}-${{ github.ref }}"
    assert wf.concurrency.cancel_in_progress is True
    assert wf.concurrency.queue_policy == "fifo"
    assert wf.env == {"RUST_BACKTRACE": "1"}

    job = wf.job_template
    assert job.runs_on == "${{ matrix.os }}"
    assert job.fail_fast is False
    assert dict(job.matrix.dimensions) == {"os": ("ubuntu-22.04",), "target": ("x86_64-unknown-linux-gnu",)}
    assert job.env == {"SCCACHE_GHA_ENABLED": "true", "RUSTC_WRAPPER": "sccache"}

    checkout, install, component, build = job.steps
    assert isinstance(checkout, ActionStep)
    assert checkout.action_ref == "actions/checkout/@v4"
    assert checkout.name == "Run actions/checkout/@v4"
    assert install.inputs == {"tool": "cargo-binstall"}
    assert isinstance(component, CommandStep)
    assert component.command == "cargo binstall cargo-component"
    assert build.inputs == {"target": "${{ matrix.target }}", "release": "false"}


def test_trigger_shorthands():
    base = {"jobs": {"a": {"steps": [{"run": "x"}]}}}
    assert workflow_from_dict({**base, "on": "push"}).triggers == (TriggerRule("push"),)
    assert workflow_from_dict({**base, "on": ["push", "pull_request"]}).triggers == (
        TriggerRule("push"),
        TriggerRule("pull_request"),
    )
    assert workflow_from_dict({**base, "on": {"push": None}}).triggers == (TriggerRule("push"),)


def test_yaml_boolean_on_key_is_understood():
    wf = workflow_from_dict({True: "push", "jobs": {"a": {"steps": [{"run": "x"}]}}})
    assert wf.triggers == (TriggerRule("push"),)


def test_concurrency_string_and_queue_policy():
    base = {"on": "push", "jobs": {"a": {"steps": [{"run": "x"}]}}}
    assert workflow_from_dict({**base, "concurrency": "ci-${{ github.ref }}"}).concurrency.group == "ci-${{ github.ref }}"
    wf = workflow_from_dict({**base, "concurrency": {"group": "g", "queue": "supersede"}})
    assert wf.concurrency.queue_policy == "supersede"
    assert wf.concurrency.cancel_in_progress is False


def test_needs_and_boolean_if():
    wf = workflow_from_dict(
        {
            "on": "push",
            "jobs": {
                "build": {"steps": [{"run": "make"}]},
                "test": {"needs": "build", "steps": [{"run": "make check", "if": False}]},
            },
        }
    )
    assert wf.jobs["test"].needs == ("build",)
    assert wf.jobs["test"].steps[0].condition == "false"


@pytest.mark.parametrize(
    "doc, message",
    [
        ({"jobs": {"a": {"steps": [{"run": "x"}]}}}, "on"),
        ({"on": "push", "jobs": {}}, "jobs"),
        ({"on": "push", "jobs": {"a": {"steps": []}}}, "steps"),
        ({"on": "push", "jobs": {"a": {"steps": [{"run": "x", "uses": "a/b@v1"}]}}}, "exactly one"),
        ({"on": "push", "jobs": {"a": {"steps": [{"name": "nothing"}]}}}, "exactly one"),
        ({"on": "push", "jobs": {"a": {"steps": [{"run": "x", "bogus": 1}]}}}, "bogus"),
        ({"on": {}, "jobs": {"a": {"steps": [{"run": "x"}]}}}, "no triggers"),
        ({"on": "push", "jobs": {"a": {"needs": "zzz", "steps": [{"run": "x"}]}}}, "missing job"),
        (
            {
                "on": "push",
                "jobs": {
                    "a": {"needs": "b", "steps": [{"run": "x"}]},
                    "b": {"needs": "a", "steps": [{"run": "x"}]},
                },
            },
            "cycle",
        ),
        ({"on": "push", "jobs": {"a": {"strategy": {"matrix": {"os": []}}, "steps": [{"run": "x"}]}}}, "no values"),
        ({"on": "push", "concurrency": {"group": "g", "queue": "lifo"}, "jobs": {"a": {"steps": [{"run": "x"}]}}}, "queue"),
        (
            {"on": "push", "jobs": {"a": {"steps": [{"id": "s", "run": "x"}, {"id": "s", "run": "y"}]}}},
            "duplicate step id",
        ),
    ],
)
def test_invalid_documents_raise_config_error(doc, message):
    with pytest.raises(ConfigError, match=message):
        workflow_from_dict(doc)


def test_yaml_syntax_error(tmp_path):
    with pytest.raises(ConfigError, match="invalid YAML"):
        load_workflow(write(tmp_path, "bad.yml", "on: [push\njobs: {"))


def test_empty_and_missing_files(tmp_path):
    with pytest.raises(ConfigError, match="empty"):
        load_workflow(write(tmp_path, "empty.yaml", ""))
    with pytest.raises(ConfigError, match="not found"):
        load_workflow(tmp_path / "nope.yml")
    with pytest.raises(ConfigError, match=".yml/.yaml or .py"):
        load_workflow(write(tmp_path, "wf.toml", "x = 1"))


def test_python_workflow(tmp_path):
    path = write(
        tmp_path,
        "ci_workflow.py",
        textwrap.dedent(
            """
            from ciengine.dsl import job, on, sh, wf

            def workflow():
                return wf("py", job("build", sh("build", "make")), triggers=[on("push")])
            """
        ),
    )
    wf = load_workflow(path)
    assert wf.name == "py"
    assert list(wf.jobs) == ["build"]


def test_python_workflow_must_define_a_workflow(tmp_path):
    path = write(tmp_path, "nothing.py", "X = 1\n")
    with pytest.raises(ConfigError, match="WorkflowDefinition"):
        load_workflow(path)


def test_python_workflow_is_validated(tmp_path):
    path = write(
        tmp_path,
        "untriggered.py",
        "from ciengine.dsl import job, sh, wf\nWORKFLOW = wf('x', job('a', sh('a', 'true')))\n",
    )
    with pytest.raises(ConfigError, match="no triggers"):
        load_workflow(path)


def test_repository_workflow_loads():
    from pathlib import Path

    path = Path(__file__).resolve().parents[1] / "ciengine_workflow.py"
    wf = load_workflow(path)
    assert list(wf.jobs) == ["lint", "test"]
    assert wf.concurrency.cancel_in_progress is True
