"""Terraform workspace: variable file and apply step."""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Any

from rich.console import Console

from spotcycle.exceptions import CommandError, ValidationError

# Progress goes to stderr; stdout carries only command results.
console = Console(stderr=True)
logger = logging.getLogger("spotcycle.infra")

TFVARS_FILE = "terraform.tfvars"

# key = value, with the value taken verbatim up to an optional trailing comment
_ASSIGN_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_-]*)\s*=\s*(.*?)\s*(?:#.*)?$")


def parse_tfvars(text: str) -> dict[str, Any]:
    """Parse the flat ``key = value`` lines of a tfvars file.

    Strings are unquoted and numbers converted; anything else (lists, maps,
    heredocs) is kept as raw text.
    """
    result: dict[str, Any] = {}
    for line in text.splitlines():
        m = _ASSIGN_RE.match(line)
        if m:
            result[m.group(1)] = _parse_value(m.group(2))
    return result


def format_tfvar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    return json.dumps(str(value))


class TerraformWorkspace:
    """A Terraform directory whose variable file is edited in place."""

    def __init__(
        self,
        directory: Path | str = ".",
        vars_file: str = TFVARS_FILE,
        binary: str = "terraform",
        env: dict[str, str] | None = None,
    ) -> None:
        self.directory = Path(directory)
        self.vars_path = self.directory / vars_file
        self.binary = binary
        self.env = dict(env or {})

    def validate(self) -> None:
        if not self.directory.is_dir():
            raise ValidationError(
                f"TERRAFORM_DIR directory does not exist: {self.directory}",
                hint="set TERRAFORM_DIR to the directory holding the Terraform configuration",
            )

    # -- Variable file --

    def read_vars(self) -> dict[str, Any]:
        if not self.vars_path.exists():
            return {}
        return parse_tfvars(self.vars_path.read_text())

    def write_vars(self, updates: dict[str, Any]) -> None:
        """Set variables in place, preserving unrelated lines and comments."""
        lines = self.vars_path.read_text().splitlines() if self.vars_path.exists() else []
        pending = dict(updates)
        for i, line in enumerate(lines):
            m = _ASSIGN_RE.match(line)
            if m and m.group(1) in pending:
                key = m.group(1)
                lines[i] = f"{key} = {format_tfvar(pending.pop(key))}"
        for key, value in pending.items():
            lines.append(f"{key} = {format_tfvar(value)}")
        self.vars_path.parent.mkdir(parents=True, exist_ok=True)
        self.vars_path.write_text("\n".join(lines) + "\n")
        logger.info("Updated %s: %s", self.vars_path, ", ".join(sorted(updates)))

    def node_count(self) -> int | None:
        value = self.read_vars().get("node_count")
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"node_count in {self.vars_path} is not an integer: {value!r}") from None

    # -- Commands --

    def init(self) -> None:
        self._run(["init", "-input=false"])

    def apply(self) -> None:
        self._run(["apply", "-auto-approve", "-input=false"])

    def _run(self, args: list[str]) -> str:
        cmd = [self.binary, *args]
        logger.debug("Running %s in %s", " ".join(cmd), self.directory)
        env = {**os.environ, **self.env}
        try:
            result = subprocess.run(
                cmd, cwd=self.directory, env=env,
                capture_output=True, text=True, check=False,
            )
        except FileNotFoundError:
            raise CommandError(cmd, 127, f"{self.binary}: command not found") from None
        if result.stdout:
            console.print(f"[dim]{result.stdout.rstrip()}[/dim]")
        if result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr or result.stdout)
        return result.stdout


def _parse_value(raw: str) -> Any:
    if len(raw) >= 2 and raw[0] == raw[-1] == '"':
        return raw[1:-1]
    if raw in ("true", "false"):
        return raw == "true"
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw
