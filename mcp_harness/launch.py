"""Work out how to start a server from its source directory."""

from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

from mcp_harness.errors import DeploymentError

PYTHON_ENTRY_POINTS = ("server.py", "main.py")


def validate_source_path(source_path: str | Path) -> Path:
    path = Path(source_path).expanduser()
    if not path.exists():
        raise DeploymentError(f"Source path not found: {source_path}")
    if not path.is_dir():
        raise DeploymentError(f"Source path is not a directory: {source_path}")
    return path.resolve()


def determine_start_command(source_path: str | Path) -> str:
    """Pick the shell command that starts the server in ``source_path``.

    Node projects (package.json) use ``npm run start`` when a start script
    exists and ``node dist/index.js`` otherwise.  Python projects run the
    first of server.py, main.py or a package's __main__.py with the current
    interpreter.
    """
    path = Path(source_path)

    package_json = path / "package.json"
    if package_json.is_file():
        try:
            package = json.loads(package_json.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise DeploymentError(f"Cannot read {package_json}: {exc}") from exc
        scripts = package.get("scripts") if isinstance(package, dict) else None
        if isinstance(scripts, dict) and scripts.get("start"):
            return "npm run start"
        return "node dist/index.js"

    python = shlex.quote(sys.executable)
    for entry in PYTHON_ENTRY_POINTS:
        if (path / entry).is_file():
            return f"{python} {entry}"
    for main in sorted(path.glob("*/__main__.py")):
        return f"{python} -m {main.parent.name}"

    raise DeploymentError(
        f"No package.json or Python entry point found in {source_path}"
    )
