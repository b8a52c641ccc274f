"""Workload deployment through Helm."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from spotcycle.exceptions import CommandError, ValidationError

logger = logging.getLogger("spotcycle.deploy")

SERVICE_TYPES = ("LoadBalancer", "ClusterIP")

STORAGE_CLASSES = {
    "gen1": ("gen1-storage1", "gen1-storage2", "gen1-storage3", "gen1-storage4"),
    "gen2": ("gen2-storage1", "gen2-storage2"),
}


def validate_service_type(service_type: str) -> str:
    """Only externally load-balanced or cluster-internal services are supported."""
    if service_type not in SERVICE_TYPES:
        raise ValidationError(
            f"Invalid service type '{service_type}'. Valid options: {', '.join(SERVICE_TYPES)}"
        )
    return service_type


def validate_storage_class(storage_class: str, generation: str) -> str:
    """Storage classes are generation specific (``gen1-*`` on gen1 regions, etc.)."""
    if not storage_class.startswith(f"{generation}-"):
        raise ValidationError(
            f"STORAGE_CLASS {storage_class} does not match generation {generation}",
            hint=f"pick one of: {', '.join(STORAGE_CLASSES.get(generation, ()))}",
        )
    return storage_class


class HelmDeployer:
    """``helm upgrade --install`` of the workload chart; safe to repeat."""

    def __init__(
        self,
        release: str,
        chart: str,
        namespace: str,
        values_file: Path | str | None = None,
        service_type: str = "LoadBalancer",
        repo_url: str | None = None,
        binary: str = "helm",
    ) -> None:
        self.release = release
        self.chart = chart
        self.namespace = namespace
        self.values_file = Path(values_file) if values_file else None
        self.service_type = validate_service_type(service_type)
        self.repo_url = repo_url
        self.binary = binary

    def command(self, kubeconfig: Path | str | None = None, gpu_count: int = 0) -> list[str]:
        cmd = [
            self.binary, "upgrade", "--install", self.release, self.chart,
            "--namespace", self.namespace, "--create-namespace",
        ]
        if self.values_file is not None and self.values_file.exists():
            cmd += ["--values", str(self.values_file)]
        cmd += ["--set", f"service.type={self.service_type}"]
        gpu_enabled = "true" if gpu_count > 0 else "false"
        cmd += ["--set", f"gpu.enabled={gpu_enabled}"]
        if gpu_count > 0:
            cmd += [
                "--set", f"gpu.resources.limits.nvidia\\.com/gpu={gpu_count}",
                "--set", f"gpu.resources.requests.nvidia\\.com/gpu={gpu_count}",
            ]
        if kubeconfig:
            cmd.append(f"--kubeconfig={kubeconfig}")
        return cmd

    def deploy(self, kubeconfig: Path | str | None = None, gpu_count: int = 0) -> None:
        if self.repo_url and "/" in self.chart and not self.chart.startswith((".", "/")):
            repo_name = self.chart.split("/", 1)[0]
            # Re-adding an existing repo is not an error worth stopping for.
            try:
                self._run([self.binary, "repo", "add", repo_name, self.repo_url, "--force-update"])
                self._run([self.binary, "repo", "update", repo_name])
            except CommandError as e:
                logger.warning("Helm repo setup failed, continuing: %s", e)
        if gpu_count:
            logger.info("Using GPU-enabled configuration (%d GPU per node)", gpu_count)
        self._run(self.command(kubeconfig, gpu_count))

    def _run(self, cmd: list[str]) -> str:
        logger.debug("Running %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError:
            raise CommandError(cmd, 127, f"{self.binary}: command not found") from None
        if result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr or result.stdout)
        return result.stdout
