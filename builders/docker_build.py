from __future__ import annotations

import os
import shlex
import shutil
import logging
import tempfile
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional

log = logging.getLogger("build")

# owner and group rwx, others nothing; the container writes the APK here
WORKSPACE_MODE = 0o770
CONTAINER_OUTPUT_DIR = "/build_output/"

# --------------------------------- Public API ---------------------------------

class WorkspaceError(Exception):
    """The per-run build directory could not be created."""


@dataclass(frozen=True)
class BuildArtifact:
    path: Path


@dataclass
class BuildOutcome:
    kind: str                  # exited | signaled | spawn_failure
    code: int
    cmd: List[str] = field(default_factory=list)
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.kind == "exited" and self.code == 0

    def __str__(self) -> str:
        return _fmt_build_outcome(self)


@contextmanager
def ephemeral_workspace(prefix: str = "profile_") -> Iterator[Path]:
    """
    Yield a fresh directory for one run's build output and delete it on exit,
    whatever happens inside the block. A failed removal is logged and
    never replaces what the block returned or raised.
    """
    try:
        path = tempfile.mkdtemp(prefix=prefix)
    except OSError as e:
        raise WorkspaceError(f"failed to make an artifact directory: {e}") from e

    try:
        try:
            os.chmod(path, WORKSPACE_MODE)
        except OSError as e:
            log.error("could not set permissions %o on %s: %s", WORKSPACE_MODE, path, e)
        yield Path(path)
    finally:
        try:
            shutil.rmtree(path)
        except OSError as e:
            # the container may leave root-owned files behind
            log.error("could not remove artifact directory %s: %s", path, e)


def run_build(
    clone_url: str,
    head_commit: str,
    workspace: Path,
    image: str,
    script: str,
    target: str,
    output_glob: str,
    docker_bin: str = "docker",
) -> BuildOutcome:
    """
    Build `head_commit` of `clone_url` inside the build container, mounting
    `workspace` as the container's output directory. Blocks until the
    container exits; there is no timeout.

    Never raises for a failed build: the outcome says how it ended.
    """
    cmd = _docker_command(docker_bin, clone_url, head_commit, workspace, image, script, target, output_glob)
    log.info("build starting: %s", shlex.join(cmd))

    try:
        proc = subprocess.run(cmd, check=False)
    except OSError as e:
        return BuildOutcome(kind="spawn_failure", code=e.errno or -1, cmd=cmd, error=str(e))

    if proc.returncode < 0:
        return BuildOutcome(kind="signaled", code=-proc.returncode, cmd=cmd)
    return BuildOutcome(kind="exited", code=proc.returncode, cmd=cmd)


def expected_artifact(workspace: Path, relpath: str) -> BuildArtifact:
    """Where the build script drops the APK. Not checked for existence."""
    return BuildArtifact(path=workspace / relpath)

# --------------------------------- Internals ----------------------------------

def _resolve_docker(docker_bin: str) -> str:
    return shutil.which(docker_bin) or docker_bin


def _docker_command(
    docker_bin: str,
    clone_url: str,
    head_commit: str,
    workspace: Path,
    image: str,
    script: str,
    target: str,
    output_glob: str,
) -> List[str]:
    return [
        _resolve_docker(docker_bin),
        "run",
        "--rm",
        "--volume", f"{workspace}:{CONTAINER_OUTPUT_DIR}",
        image,
        script,
        clone_url,
        head_commit,
        target,
        output_glob,
    ]


def _fmt_build_outcome(outcome: BuildOutcome) -> str:
    cmd: Optional[str] = shlex.join(outcome.cmd) if outcome.cmd else None
    if outcome.kind == "spawn_failure":
        what = f"could not start the build ({outcome.error or outcome.code})"
    elif outcome.kind == "signaled":
        what = f"build killed by signal {outcome.code}"
    else:
        what = f"build exited with status {outcome.code}"
    return f"{what}; command: {cmd}" if cmd else what
