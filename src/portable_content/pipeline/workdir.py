"""Per-attempt scratch directories for sandboxed tool runs."""

from __future__ import annotations

import shutil
import stat
from dataclasses import dataclass
from pathlib import Path

from portable_content.pipeline.naming import extension_for


@dataclass(slots=True)
class JobWorkdir:
    """Materialized scratch layout of one job attempt."""

    base_dir: Path
    input_dir: Path
    output_dir: Path
    meta_dir: Path


class JobWorkdirManager:
    """Creates deterministic per-attempt directory layout."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def materialize(
        self,
        *,
        job_id: str,
        attempt: int,
        inputs: list[tuple[str, bytes]],
    ) -> JobWorkdir:
        """Create a fresh layout and write input bytes as ``input-N.{ext}``."""

        base_dir = self.root_dir / job_id / f"attempt-{attempt}"
        if base_dir.exists():
            remove_tree(base_dir)
        input_dir = base_dir / "input"
        output_dir = base_dir / "output"
        meta_dir = base_dir / "meta"
        input_dir.mkdir(parents=True, exist_ok=True)
        output_dir.mkdir(parents=True, exist_ok=True)
        meta_dir.mkdir(parents=True, exist_ok=True)

        for index, (media_type, data) in enumerate(inputs):
            (input_dir / f"input-{index}.{extension_for(media_type)}").write_bytes(data)

        return JobWorkdir(
            base_dir=base_dir,
            input_dir=input_dir,
            output_dir=output_dir,
            meta_dir=meta_dir,
        )

    def discard(self, workdir: JobWorkdir) -> None:
        """Remove the attempt directory and the job directory once empty."""

        remove_tree(workdir.base_dir)
        job_dir = workdir.base_dir.parent
        if job_dir.exists() and not any(job_dir.iterdir()):
            job_dir.rmdir()


def remove_tree(path: Path) -> None:
    """``rmtree`` that first restores owner write permission on read-only inputs."""

    if not path.exists():
        return
    for target in [path, *path.rglob("*")]:
        if target.is_symlink():
            continue
        mode = target.stat().st_mode | stat.S_IWUSR
        if target.is_dir():
            mode |= stat.S_IXUSR
        target.chmod(mode)
    shutil.rmtree(path)
