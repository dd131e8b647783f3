# ciengine_workflow.py
# Workflow for ciengine itself: lint, then the test suite on every supported Python
from __future__ import annotations

from ciengine.dsl import concurrency, job, matrix, on, sh, wf


def workflow():
    return wf(
        "ciengine",
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
        ),
        job(
            "test",
            sh("Install package", "python${{ matrix.python }} -m pip install -e '.[test]'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q"),
            matrix=matrix(python=["3.10", "3.11", "3.12"]),
            fail_fast=False,
            needs=["lint"],
        ),
        triggers=[on("pull_request", "opened", "reopened", "synchronize"), on("push")],
        concurrency=concurrency("${{ github.workflow }}-${{ github.ref }}", cancel_in_progress=True),
        env={"PYTHONDONTWRITEBYTECODE": "1"},
    )
