"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from portable_content.pipeline.registry import OutputSpec, TransformRegistry, TransformSpec
from portable_content.pipeline.repository import JobQueueRepository
from portable_content.storage.gateway import LocalObjectStore

SRC_DIR = Path(__file__).resolve().parents[1] / "src"

ECHO_TOOL_COMMAND = (
    f"{sys.executable} -m portable_content.pipeline.sandbox.echo_tool "
    "--input-dir {input_dir} --output-dir {output_dir} --options {options_file}"
)


def echo_transform(
    *,
    transform_id: str = "markdown:html",
    extra_args: str = "",
    outputs: tuple[OutputSpec, ...] = (OutputSpec(media_type="text/html"),),
    kinds: tuple[str, ...] = ("markdown",),
) -> TransformSpec:
    """Transform spec backed by the bundled echo tool."""

    return TransformSpec(
        id=transform_id,
        tool_image=f"{ECHO_TOOL_COMMAND} {extra_args}".strip(),
        tool_version="1",
        kinds=kinds,
        accepts=("text/markdown", "text/plain"),
        outputs=outputs,
    )


@pytest.fixture(autouse=True)
def _tool_import_path(monkeypatch: pytest.MonkeyPatch) -> None:
    """Let ``python -m`` tool subprocesses import the package from ``src``."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        f"{SRC_DIR}{os.pathsep}{existing}" if existing else str(SRC_DIR),
    )


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[LocalObjectStore]:
    gateway = LocalObjectStore(tmp_path / "store")
    try:
        yield gateway
    finally:
        gateway.close()


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobQueueRepository]:
    repo = JobQueueRepository(tmp_path / "queue.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def make_echo_transform():
    return echo_transform


@pytest.fixture()
def echo_registry() -> TransformRegistry:
    return TransformRegistry([echo_transform()])
