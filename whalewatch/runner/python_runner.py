"""Runs rule instructions as Python snippets with helper objects preloaded."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from dataclasses import asdict, dataclass
from typing import Protocol

from whalewatch.runner.working_directory import (
    RunnerWorkingDirectory,
    get_referencing_working_directory_instance,
)

logger = logging.getLogger(__name__)

_PACKAGE_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

_COMMAND_PREAMBLE = (
    "from command_util import setup_from_path as _setup_command_util; "
    "command_util = _setup_command_util({dockerfile_path!r})"
)
_PREAMBLES = {
    "command": _COMMAND_PREAMBLE,
    "fs": (
        "from whalewatch.runner import fs_util as _fs_util; "
        "fs_util = _fs_util.setup({oci_image!r})"
    ),
    "os": (
        "from whalewatch.runner import os_util as _os_util; "
        "os_util = _os_util.setup({docker_image!r})"
    ),
}
_FIX_PREAMBLE = (
    _COMMAND_PREAMBLE
    + "; from fix_util import setup_from_path as _setup_fix_util; "
    "fix_util = _setup_fix_util({dockerfile_path!r})"
)


@dataclass
class TemplateData:
    """Paths a rule's helper objects are set up from."""

    dockerfile_path: str = ""
    oci_image: str = ""
    docker_image: str = ""


_WORKING_DIRECTORY_PATHS = TemplateData(
    dockerfile_path="./Dockerfile",
    oci_image="./out.tar",
    docker_image="./out_docker.tar",
)


class RunnerError(RuntimeError):
    """Raised when a target is unsupported or a rule snippet fails."""

    def __init__(
        self, message: str, returncode: int | None = None, stdout: str = "", stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class Runner(Protocol):
    def run(self, context_data: TemplateData, command: str) -> None: ...

    def run_fix(self, command: str) -> None: ...


class PythonRunner:
    """Executes snippets with a Python interpreter inside the shared working directory."""

    def __init__(
        self,
        preamble: str,
        working_directory: RunnerWorkingDirectory,
        executable: str = sys.executable,
    ) -> None:
        self.preamble = preamble
        self.working_directory = working_directory
        self.executable = executable

    def __str__(self) -> str:
        return f"Exec: {self.executable} with preamble {self.preamble}"

    def _execute(self, script: str) -> None:
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(
            part for part in (_PACKAGE_ROOT, env.get("PYTHONPATH", "")) if part
        )
        try:
            result = subprocess.run(
                [self.executable, "-c", script],
                cwd=self.working_directory.tmp_dir_path,
                capture_output=True,
                text=True,
                env=env,
            )
        except OSError as exc:
            raise RunnerError(str(exc)) from exc
        if result.returncode != 0:
            raise RunnerError(
                f"exit status {result.returncode}",
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

    def run(self, context_data: TemplateData, command: str) -> None:
        """Run ``command`` against the given artifacts; raise RunnerError if it fails.

        Each run releases one reference on the working directory.
        """
        try:
            self.working_directory.populate(
                context_data.dockerfile_path, context_data.oci_image, context_data.docker_image
            )
            script = self.preamble.format_map(asdict(_WORKING_DIRECTORY_PATHS)) + "\n" + command
            try:
                self._execute(script)
            except RunnerError as exc:
                logger.error("%s stderr=%s stdout=%s", exc, exc.stderr, exc.stdout)
                raise
        finally:
            self.working_directory.free()

    def run_fix(self, command: str) -> None:
        """Run a fix snippet with the Dockerfile helpers loaded; failures are logged."""
        logger.info("Running fix")
        with get_referencing_working_directory_instance():
            script = _FIX_PREAMBLE.format_map(asdict(_WORKING_DIRECTORY_PATHS)) + "\n" + command
            try:
                self._execute(script)
            except RunnerError as exc:
                logger.error("Fix failed: %s stderr=%s stdout=%s", exc, exc.stderr, exc.stdout)


def new_python_runner(target: str) -> PythonRunner:
    """Create a runner whose preamble sets up the helper for ``target``."""
    preamble = _PREAMBLES.get(target)
    if preamble is None:
        raise RunnerError(f"Unsupported target: {target}! Supported targets are: command, fs, os")
    return PythonRunner(preamble, get_referencing_working_directory_instance())