# process.py
from __future__ import annotations

import os
import signal
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol

from .cancel import CancelToken

OUTPUT_ENV = "CI_OUTPUT"
POSIX = os.name == "posix"

# Keep the tail only so huge build logs don't end up in results.
MAX_CAPTURE = 4000


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


class CommandRunner(Protocol):
    def __call__(
        self,
        command: str,
        *,
        cwd: Path,
        env: Mapping[str, str],
        cancel: CancelToken,
    ) -> CommandResult:
        ...


def parse_outputs(text: str) -> Dict[str, str]:
    """
    Parse `key=value` lines written to $CI_OUTPUT.

    Multi-line values use the heredoc form:
        notes<<EOF
        line one
        line two
        EOF
    """
    outputs: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delim = line.split("<<", 1)
            body = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            i += 1  # skip delimiter
            outputs[key.strip()] = "\n".join(body)
            continue
        if "=" in line:
            key, value = line.split("=", 1)
            outputs[key.strip()] = value
    return outputs


class SubprocessRunner:
    """
    Runs a command through a shell, captures its output, and kills it if the
    cancel token fires while it is in flight.
    """

    def __init__(self, shell: str = "bash", inherit_env: bool = True):
        self.shell = shell
        self.inherit_env = inherit_env

    def __call__(
        self,
        command: str,
        *,
        cwd: Path,
        env: Mapping[str, str],
        cancel: CancelToken,
    ) -> CommandResult:
        if not command:
            raise ValueError("command is empty")
        if not Path(cwd).exists():
            raise FileNotFoundError(f"working directory not found: {cwd}")

        full_env = dict(os.environ) if self.inherit_env else {}
        full_env.update(env)

        fd, out_path = tempfile.mkstemp(prefix="ciengine-output-")
        os.close(fd)
        full_env[OUTPUT_ENV] = out_path

        try:
            proc = subprocess.Popen(
                [self.shell, "-c", command],
                cwd=str(cwd),
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=POSIX,
            )

            kill_lock = threading.Lock()
            killed = threading.Event()
            finished = threading.Event()

            def kill(_reason=None) -> None:
                with kill_lock:
                    if finished.is_set():
                        return
                    if POSIX:
                        # the whole process group, background children included
                        try:
                            os.killpg(proc.pid, signal.SIGKILL)
                            killed.set()
                        except ProcessLookupError:
                            pass
                    elif proc.poll() is None:
                        killed.set()
                        proc.kill()

            cancel.on_cancel(kill)
            stdout, stderr = proc.communicate()
            with kill_lock:
                finished.set()

            outputs: Dict[str, str] = {}
            out_file = Path(out_path)
            if out_file.exists():
                outputs = parse_outputs(out_file.read_text(encoding="utf-8"))

            return CommandResult(
                exit_code=proc.returncode if proc.returncode is not None else 1,
                stdout=(stdout or "")[-MAX_CAPTURE:],
                stderr=(stderr or "")[-MAX_CAPTURE:],
                outputs=outputs,
                cancelled=killed.is_set(),
            )
        finally:
            Path(out_path).unlink(missing_ok=True)


def default_runner(shell: Optional[str] = None) -> SubprocessRunner:
    from .settings import SHELL

    return SubprocessRunner(shell=shell or SHELL)
