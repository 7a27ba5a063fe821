"""Subprocess and container sandbox runners for transform tools."""

from __future__ import annotations

import functools
import hashlib
import logging
import os
import shlex
import shutil
import signal
import stat
import subprocess
import tempfile
import time
import uuid
from collections.abc import Callable
from pathlib import Path

from portable_content.pipeline.contracts import (
    OPTIONS_FILENAME,
    RESULT_DESCRIPTOR_FILENAME,
    ResultDescriptor,
    read_result_descriptor,
    write_json,
)
from portable_content.pipeline.errors import (
    HashMismatch,
    MalformedOutput,
    ResourceExceeded,
    ToolFailed,
)
from portable_content.pipeline.failure_classifier import (
    DEFAULT_TRANSIENT_EXIT_CODES,
    ceiling_for,
    classify_tool_failure,
)
from portable_content.pipeline.models import FailureClass
from portable_content.pipeline.sandbox.base import (
    ProducedOutput,
    SandboxLimits,
    SandboxRunRequest,
    SandboxRunResult,
)

logger = logging.getLogger(__name__)

ISOLATION_MODES = ("process", "docker")
CONTAINER_INPUT_DIR = "/work/input"
CONTAINER_OUTPUT_DIR = "/work/output"
CONTAINER_META_DIR = "/work/meta"
_STDIO_TAIL_BYTES = 8192
_HASH_CHUNK = 1024 * 1024

# Runs inside the new mount namespace: bind every path given before "--" onto
# itself read-only, then exec the tool command that follows.
_READ_ONLY_BIND_SCRIPT = (
    'while [ "$1" != "--" ]; do '
    'mount --bind "$1" "$1" && mount -o remount,bind,ro "$1" "$1" || exit 125; '
    'shift; done; shift; exec "$@"'
)


class LocalSandboxRunner:
    """Run one tool invocation under hard ceilings and verify what it wrote.

    ``process`` isolation applies POSIX rlimits in the child and, unless
    disabled, runs the tool in fresh network and mount namespaces with the
    inputs bind-mounted read-only; it refuses to run when the host cannot
    create them. The whole process group is killed on the wall-clock
    deadline. ``docker`` isolation wraps the tool image in a
    ``docker run`` with no network and a read-only root filesystem.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        isolation: str = "process",
        network_isolation: bool = True,
        unshare_binary: str = "unshare",
        docker_binary: str = "docker",
        transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
        graceful_shutdown_seconds: float = 5.0,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        if isolation not in ISOLATION_MODES:
            raise ValueError(f"Unsupported sandbox isolation mode: {isolation}")
        self.isolation = isolation
        self.network_isolation = network_isolation
        self.unshare_binary = unshare_binary
        self.docker_binary = docker_binary
        self.transient_exit_codes = transient_exit_codes
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, request: SandboxRunRequest) -> SandboxRunResult:
        request.output_dir.mkdir(parents=True, exist_ok=True)
        request.meta_dir.mkdir(parents=True, exist_ok=True)
        options_path = request.meta_dir / OPTIONS_FILENAME
        write_json(options_path, {"outputs": request.outputs})
        _make_read_only(request.input_dir)
        _make_read_only(options_path)

        container_name: str | None = None
        if self.isolation == "docker":
            container_name = f"portable-content-{uuid.uuid4().hex[:12]}"
            argv = build_docker_command(
                request=request,
                options_path=options_path,
                container_name=container_name,
                docker_binary=self.docker_binary,
            )
            preexec_fn = None
        else:
            argv = render_tool_command(
                request.tool_image,
                input_dir=str(request.input_dir),
                output_dir=str(request.output_dir),
                options_file=str(options_path),
            )
            if not _command_exists(argv[0], cwd=request.output_dir):
                raise ToolFailed(
                    f"Tool command not found: {argv[0]}",
                    exit_code=None,
                    transient=False,
                    reason_code="command_not_found",
                )
            if self.network_isolation:
                if not namespace_isolation_available(self.unshare_binary):
                    raise ToolFailed(
                        f"Namespace isolation via {self.unshare_binary} is unavailable; "
                        "refusing to run the tool with network access.",
                        exit_code=None,
                        transient=False,
                        reason_code="isolation_unavailable",
                    )
                argv = namespace_command(
                    argv,
                    read_only_paths=[request.input_dir, options_path],
                    unshare_binary=self.unshare_binary,
                )
            preexec_fn = _limits_preexec(request.limits)

        input_digests = _digest_inputs(request.input_dir, options_path)
        stdout_path = request.meta_dir / "stdout.log"
        stderr_path = request.meta_dir / "stderr.log"
        logger.debug("Sandbox launching %s (isolation=%s)", argv[0], self.isolation)
        started = time.monotonic()
        try:
            with (
                stdout_path.open("wb") as stdout_handle,
                stderr_path.open("wb") as stderr_handle,
            ):
                exit_code = self._run_with_deadline(
                    argv=argv,
                    preexec_fn=preexec_fn,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    limits=request.limits,
                    shutdown_requested=request.shutdown_requested,
                    container_name=container_name,
                    cwd=request.output_dir,
                )
        except FileNotFoundError as error:
            raise ToolFailed(
                f"Tool command not found: {argv[0]}",
                exit_code=None,
                transient=False,
                reason_code="command_not_found",
            ) from error
        except OSError as error:
            raise ToolFailed(
                f"Tool failed to start: {error}",
                exit_code=None,
                transient=True,
                reason_code="spawn_failed",
            ) from error
        duration = time.monotonic() - started

        if _digest_inputs(request.input_dir, options_path) != input_digests:
            raise ToolFailed(
                "Tool modified its read-only inputs.",
                exit_code=exit_code,
                transient=False,
                reason_code="input_modified",
            )
        if exit_code != 0:
            self._raise_for_exit(
                exit_code=exit_code,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        outputs, descriptor = _verify_outputs(request.output_dir)
        return SandboxRunResult(
            outputs=outputs,
            tool_name=descriptor.tool_name,
            tool_version=descriptor.tool_version,
            generated_at=descriptor.generated_at,
            exit_code=exit_code,
            duration_seconds=duration,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            details={"isolation": self.isolation, "limits": request.limits.to_metadata()},
        )

    def _run_with_deadline(  # noqa: PLR0913
        self,
        *,
        argv: list[str],
        preexec_fn: Callable[[], None] | None,
        stdout_handle,
        stderr_handle,
        limits: SandboxLimits,
        shutdown_requested: Callable[[], bool] | None,
        container_name: str | None,
        cwd: Path,
    ) -> int:
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=subprocess.DEVNULL,
                stdout=stdout_handle,
                stderr=stderr_handle,
                cwd=str(cwd),
                env=_tool_environment(),
                preexec_fn=preexec_fn,  # noqa: PLW1509
                start_new_session=True,
            )
        except subprocess.SubprocessError as error:
            # Raised when the rlimits cannot be applied in the child.
            raise ToolFailed(
                f"Sandbox limits could not be applied: {error}",
                exit_code=None,
                transient=False,
                reason_code="sandbox_setup_failed",
                details=limits.to_metadata(),
            ) from error
        start_monotonic = time.monotonic()
        shutdown_deadline: float | None = None

        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode

            now = time.monotonic()
            if now - start_monotonic >= limits.wall_clock_seconds:
                self._terminate(process, container_name)
                raise ResourceExceeded(
                    f"Tool exceeded wall-clock ceiling of {limits.wall_clock_seconds}s.",
                    ceiling="wall_clock",
                    exit_code=124,
                )

            if shutdown_requested is not None and shutdown_requested():
                if shutdown_deadline is None:
                    shutdown_deadline = now + max(0.0, self.graceful_shutdown_seconds)
                if now >= shutdown_deadline:
                    self._terminate(process, container_name)
                    raise ToolFailed(
                        "Tool interrupted by worker shutdown.",
                        exit_code=124,
                        transient=True,
                        reason_code="worker_shutdown",
                    )

            time.sleep(self.poll_interval_seconds)

    def _terminate(self, process: subprocess.Popen[bytes], container_name: str | None) -> None:
        if container_name is not None:
            subprocess.run(  # noqa: S603
                [self.docker_binary, "kill", container_name],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        _terminate_process_group(process)

    def _raise_for_exit(self, *, exit_code: int, stdout_path: Path, stderr_path: Path) -> None:
        classification = classify_tool_failure(
            exit_code=exit_code,
            stdout=_read_tail(stdout_path),
            stderr=_read_tail(stderr_path),
            transient_exit_codes=self.transient_exit_codes,
        )
        details = classification.to_event_details()
        if classification.failure_class == FailureClass.RESOURCE_EXCEEDED:
            raise ResourceExceeded(
                f"Tool breached a resource ceiling (exit code {exit_code}).",
                ceiling=ceiling_for(classification),
                exit_code=exit_code,
                details=details,
            )
        raise ToolFailed(
            f"Tool exited with code {exit_code} ({classification.reason_code}).",
            exit_code=exit_code,
            transient=classification.transient,
            reason_code=classification.reason_code,
            details=details,
        )


def render_tool_command(
    template: str,
    *,
    input_dir: str,
    output_dir: str,
    options_file: str,
) -> list[str]:
    """Render a tool command template into argv."""

    stripped = template.strip()
    if not stripped:
        raise ToolFailed(
            "Tool command template is empty.",
            exit_code=None,
            transient=False,
            reason_code="empty_command",
        )
    try:
        rendered = stripped.format(
            input_dir=shlex.quote(input_dir),
            output_dir=shlex.quote(output_dir),
            options_file=shlex.quote(options_file),
        )
    except (KeyError, IndexError) as error:
        raise ToolFailed(
            f"Unsupported command template placeholder: {error}",
            exit_code=None,
            transient=False,
            reason_code="bad_template",
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise ToolFailed(
            "Tool command template rendered empty command.",
            exit_code=None,
            transient=False,
            reason_code="empty_command",
        )
    return argv


def build_docker_command(
    *,
    request: SandboxRunRequest,
    options_path: Path,
    container_name: str,
    docker_binary: str = "docker",
) -> list[str]:
    """Wrap a tool image reference (plus optional args) in ``docker run``."""

    tool_argv = render_tool_command(
        request.tool_image,
        input_dir=CONTAINER_INPUT_DIR,
        output_dir=CONTAINER_OUTPUT_DIR,
        options_file=f"{CONTAINER_META_DIR}/{OPTIONS_FILENAME}",
    )
    limits = request.limits
    return [
        docker_binary,
        "run",
        "--rm",
        "--name",
        container_name,
        "--network",
        "none",
        "--read-only",
        "--tmpfs",
        "/tmp:size=64m,mode=1777",
        "--cap-drop=ALL",
        "--security-opt",
        "no-new-privileges",
        "--user",
        f"{os.getuid()}:{os.getgid()}",
        "--pids-limit",
        str(limits.max_processes),
        "--memory",
        f"{limits.memory_mb}m",
        "--memory-swap",
        f"{limits.memory_mb}m",
        "--ulimit",
        f"cpu={limits.cpu_seconds}:{limits.cpu_seconds}",
        "--ulimit",
        f"nofile={limits.open_files}:{limits.open_files}",
        "--mount",
        f"type=bind,src={request.input_dir},dst={CONTAINER_INPUT_DIR},readonly",
        "--mount",
        f"type=bind,src={request.output_dir},dst={CONTAINER_OUTPUT_DIR}",
        "--mount",
        f"type=bind,src={options_path},dst={CONTAINER_META_DIR}/{OPTIONS_FILENAME},readonly",
        "-e",
        f"PORTABLE_CONTENT_INPUT_DIR={CONTAINER_INPUT_DIR}",
        "-e",
        f"PORTABLE_CONTENT_OUTPUT_DIR={CONTAINER_OUTPUT_DIR}",
        *tool_argv,
    ]


def namespace_command(
    argv: list[str],
    *,
    read_only_paths: list[Path],
    unshare_binary: str = "unshare",
) -> list[str]:
    """Wrap argv in fresh user, network and mount namespaces.

    The new network namespace has only a downed loopback interface, and every
    path in ``read_only_paths`` is bind-mounted onto itself read-only before
    the tool starts, so even a root tool gets ``EROFS`` when writing inputs.
    """

    return [
        unshare_binary,
        "--map-root-user",
        "--net",
        "--mount",
        "sh",
        "-c",
        _READ_ONLY_BIND_SCRIPT,
        "portable-content-sandbox",
        *(str(path) for path in read_only_paths),
        "--",
        *argv,
    ]


@functools.cache
def namespace_isolation_available(unshare_binary: str = "unshare") -> bool:
    """Check once per process whether namespace isolation works on this host."""

    if shutil.which(unshare_binary) is None:
        logger.warning("Namespace isolation unavailable: %s not found", unshare_binary)
        return False
    with tempfile.TemporaryDirectory(prefix="portable-content-") as scratch:
        argv = namespace_command(
            ["true"],
            read_only_paths=[Path(scratch)],
            unshare_binary=unshare_binary,
        )
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                timeout=10,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as error:
            logger.warning("Namespace isolation unavailable: %s", error)
            return False
    if completed.returncode != 0:
        logger.warning(
            "Namespace isolation unavailable (%s exited %d): %s",
            unshare_binary,
            completed.returncode,
            completed.stderr.decode("utf-8", errors="replace").strip(),
        )
        return False
    return True


def _limits_preexec(limits: SandboxLimits) -> Callable[[], None]:
    import resource  # noqa: PLC0415

    memory_bytes = limits.memory_mb * 1024 * 1024

    def apply_limits() -> None:
        resource.setrlimit(resource.RLIMIT_CPU, (limits.cpu_seconds, limits.cpu_seconds))
        resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
        resource.setrlimit(resource.RLIMIT_NOFILE, (limits.open_files, limits.open_files))
        resource.setrlimit(resource.RLIMIT_NPROC, (limits.max_processes, limits.max_processes))
        resource.setrlimit(resource.RLIMIT_CORE, (0, 0))

    return apply_limits


def _command_exists(command: str, *, cwd: Path) -> bool:
    if os.sep not in command:
        return shutil.which(command) is not None
    path = Path(command)
    if not path.is_absolute():
        path = cwd / path
    return path.is_file() and os.access(path, os.X_OK)


def _tool_environment() -> dict[str, str]:
    env = {
        "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
        "LANG": "C.UTF-8",
        "PYTHONDONTWRITEBYTECODE": "1",
    }
    # Bundled tools run as ``python -m``; keep the interpreter's import path.
    for name in ("PYTHONPATH", "VIRTUAL_ENV", "HOME", "TMPDIR"):
        value = os.environ.get(name)
        if value:
            env[name] = value
    return env


def _make_read_only(path: Path) -> None:
    if not path.exists():
        return
    targets = [path]
    if path.is_dir():
        targets.extend(path.rglob("*"))
    for target in targets:
        mode = target.stat().st_mode
        target.chmod(mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))


def _digest_inputs(input_dir: Path, options_path: Path) -> dict[str, str]:
    digests: dict[str, str] = {}
    for path in sorted(input_dir.rglob("*")):
        if path.is_file():
            digests[path.relative_to(input_dir).as_posix()] = _measure(path)[1]
        else:
            digests[path.relative_to(input_dir).as_posix()] = "dir"
    if options_path.exists():
        digests[f"meta/{options_path.name}"] = _measure(options_path)[1]
    return digests


def _verify_outputs(output_dir: Path) -> tuple[list[ProducedOutput], ResultDescriptor]:
    descriptor_path = output_dir / RESULT_DESCRIPTOR_FILENAME
    if not descriptor_path.exists():
        raise MalformedOutput(f"Tool exited cleanly without writing {RESULT_DESCRIPTOR_FILENAME}.")
    try:
        descriptor = read_result_descriptor(descriptor_path)
    except (ValueError, TypeError) as error:
        raise MalformedOutput(f"Invalid result descriptor: {error}") from error
    if not descriptor.variants:
        raise MalformedOutput("Result descriptor lists no variants.")

    root = output_dir.resolve()
    outputs: list[ProducedOutput] = []
    for entry in descriptor.variants:
        path = (output_dir / entry.filename).resolve()
        if not path.is_relative_to(root) or path == root:
            raise MalformedOutput(f"Output filename escapes output directory: {entry.filename}")
        if not path.is_file():
            raise MalformedOutput(f"Declared output file is missing: {entry.filename}")
        byte_size, digest = _measure(path)
        if byte_size != entry.byte_size:
            raise HashMismatch(
                f"Output {entry.filename} declares {entry.byte_size} bytes, found {byte_size}.",
            )
        if _normalize_hash(entry.content_hash) != digest:
            raise HashMismatch(
                f"Output {entry.filename} declares hash {entry.content_hash}, found {digest}.",
            )
        outputs.append(
            ProducedOutput(
                media_type=entry.media_type,
                path=path,
                byte_size=byte_size,
                content_hash=f"sha256:{digest}",
                width=entry.width,
                height=entry.height,
            ),
        )
    return outputs, descriptor


def _measure(path: Path) -> tuple[int, str]:
    digest = hashlib.sha256()
    size = 0
    with path.open("rb") as handle:
        while chunk := handle.read(_HASH_CHUNK):
            size += len(chunk)
            digest.update(chunk)
    return size, digest.hexdigest()


def _normalize_hash(value: str) -> str:
    algorithm, sep, digest = value.strip().partition(":")
    if not sep:
        return algorithm.lower()
    if algorithm.lower() != "sha256":
        return value
    return digest.lower()


def _read_tail(path: Path) -> str:
    if not path.exists():
        return ""
    with path.open("rb") as handle:
        handle.seek(0, os.SEEK_END)
        size = handle.tell()
        handle.seek(max(0, size - _STDIO_TAIL_BYTES))
        return handle.read().decode("utf-8", errors="replace")


def _terminate_process_group(process: subprocess.Popen[bytes]) -> None:
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except OSError:
            return
        process.wait(timeout=2)
