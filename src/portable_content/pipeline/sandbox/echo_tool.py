"""Local demo transform tool for sandbox integration tests."""

from __future__ import annotations

import argparse
import hashlib
import html
import os
import subprocess
import sys
import time
from pathlib import Path

from portable_content.pipeline.contracts import (
    RESULT_DESCRIPTOR_FILENAME,
    load_json,
    write_json,
)
from portable_content.pipeline.naming import extension_for, parse_media_type

TOOL_NAME = "echo-tool"
TOOL_VERSION = "1.0.0"


def main(argv: list[str] | None = None) -> int:
    """Render every requested output deterministically from the input text."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--input-dir", required=True)
    parser.add_argument("--output-dir", required=True)
    parser.add_argument("--options", required=True)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="")
    parser.add_argument("--skip-metadata", action="store_true")
    parser.add_argument("--lie-about-hash", action="store_true")
    parser.add_argument("--pid-file", default="")
    args, _ = parser.parse_known_args(argv)

    if args.pid_file:
        # Leaves a sleeping child behind so callers can check the whole group dies.
        child = subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", "import time; time.sleep(600)"],
        )
        Path(args.pid_file).write_text(f"{os.getpid()}\n{child.pid}\n", "utf-8")
    if args.sleep > 0:
        time.sleep(args.sleep)
    if args.stderr:
        sys.stderr.write(args.stderr)
    if args.exit_code:
        return args.exit_code

    input_dir = Path(args.input_dir)
    output_dir = Path(args.output_dir)
    options = load_json(Path(args.options))
    source = "".join(
        path.read_text("utf-8", errors="replace")
        for path in sorted(input_dir.iterdir())
        if path.is_file()
    )

    variants: list[dict[str, object]] = []
    for index, output in enumerate(options.get("outputs", [])):
        media_type = output["mediaType"]
        body = _render(source, media_type).encode("utf-8")
        filename = f"output-{index}.{extension_for(media_type)}"
        (output_dir / filename).write_bytes(body)
        digest = hashlib.sha256(body).hexdigest()
        if args.lie_about_hash:
            digest = hashlib.sha256(body + b"tampered").hexdigest()
        variants.append(
            {
                "mediaType": media_type,
                "filename": filename,
                "bytes": len(body),
                "contentHash": f"sha256:{digest}",
            },
        )

    if not args.skip_metadata:
        write_json(
            output_dir / RESULT_DESCRIPTOR_FILENAME,
            {
                "variants": variants,
                "toolInfo": {"name": TOOL_NAME, "version": TOOL_VERSION},
            },
        )
    return 0


def _render(source: str, media_type: str) -> str:
    base, _ = parse_media_type(media_type)
    if base == "text/html":
        return f"<pre>{html.escape(source)}</pre>\n"
    if base == "image/svg+xml":
        return (
            '<svg xmlns="http://www.w3.org/2000/svg"><text>'
            f"{html.escape(source)}</text></svg>\n"
        )
    return source


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
