"""Cluster-state access through kubectl."""

from __future__ import annotations

import json
import logging
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from spotcycle.exceptions import CommandError, WaitTimeout

logger = logging.getLogger("spotcycle.kube")


class Kubectl:
    """Thin kubectl wrapper bound to one kubeconfig.

    Every wait is bounded: ``wait_*`` methods raise :class:`WaitTimeout` once
    ``timeout`` seconds pass, leaving cluster state untouched.
    """

    def __init__(
        self,
        kubeconfig: Path | str | None = None,
        binary: str = "kubectl",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 5.0,
    ) -> None:
        self.kubeconfig = Path(kubeconfig) if kubeconfig else None
        self.binary = binary
        self._sleep = sleep
        self._clock = clock
        self.poll_interval = poll_interval

    # -- Reads --

    def reachable(self, request_timeout: int = 10) -> bool:
        try:
            self._run(["cluster-info", f"--request-timeout={request_timeout}s"])
        except CommandError as e:
            logger.debug("Cluster not reachable: %s", e)
            return False
        return True

    def workload_nodes(self, namespace: str, selector: str) -> list[str]:
        pods = self._get_json(["get", "pods", "-n", namespace, "-l", selector])
        nodes = {p.get("spec", {}).get("nodeName") for p in pods.get("items", [])}
        return sorted(n for n in nodes if n)

    def running_pods(self, namespace: str, selector: str) -> list[str]:
        pods = self._get_json([
            "get", "pods", "-n", namespace, "-l", selector,
            "--field-selector=status.phase=Running",
        ])
        return [p["metadata"]["name"] for p in pods.get("items", [])]

    def ready_nodes(self) -> list[str]:
        nodes = self._get_json(["get", "nodes"])
        return [
            n["metadata"]["name"]
            for n in nodes.get("items", [])
            if _condition_true(n, "Ready")
        ]

    def service_address(self, namespace: str, selector: str) -> str | None:
        """First load-balancer IP or hostname of the workload's service."""
        services = self._get_json(["get", "svc", "-n", namespace, "-l", selector])
        for svc in services.get("items", []):
            for ingress in svc.get("status", {}).get("loadBalancer", {}).get("ingress", []) or []:
                address = ingress.get("ip") or ingress.get("hostname")
                if address:
                    return address
        return None

    def service_name(self, namespace: str, selector: str) -> str | None:
        services = self._get_json(["get", "svc", "-n", namespace, "-l", selector])
        items = services.get("items", [])
        return items[0]["metadata"]["name"] if items else None

    # -- Mutations --

    def cordon(self, node: str) -> None:
        self._run(["cordon", node])

    def drain(self, node: str, timeout: int = 300) -> None:
        """Evict pods from a node. Volumes are left alone; only emptyDir data goes."""
        self._run([
            "drain", node,
            "--ignore-daemonsets",
            "--delete-emptydir-data",
            f"--timeout={timeout}s",
        ])

    # -- Bounded waits --

    def wait_nodes_ready(self, count: int, timeout: int = 300) -> list[str]:
        deadline = self._clock() + timeout
        while True:
            ready = self.ready_nodes()
            if len(ready) >= count:
                return ready
            if self._clock() >= deadline:
                raise WaitTimeout(
                    f"Only {len(ready)}/{count} nodes Ready after {timeout}s"
                )
            self._sleep(self.poll_interval)

    def wait_pvcs_bound(self, namespace: str, timeout: int = 300) -> None:
        self._wait([
            "wait", "--for=jsonpath={.status.phase}=Bound", "pvc", "--all",
            "-n", namespace, f"--timeout={timeout}s",
        ], f"PVCs in {namespace} not Bound after {timeout}s")

    def wait_pods_ready(self, namespace: str, selector: str, timeout: int = 300) -> None:
        self._wait([
            "wait", "--for=condition=Ready", "pod", "-l", selector,
            "-n", namespace, f"--timeout={timeout}s",
        ], f"Pods matching {selector} not Ready after {timeout}s")

    # -- Internal --

    def _wait(self, args: list[str], message: str) -> None:
        try:
            self._run(args)
        except CommandError as e:
            raise WaitTimeout(message) from e

    def _get_json(self, args: list[str]) -> dict[str, Any]:
        out = self._run([*args, "-o", "json"])
        try:
            return json.loads(out) if out.strip() else {}
        except ValueError as e:
            raise CommandError([self.binary, *args], 0, f"unparseable output: {e}") from e

    def _run(self, args: list[str]) -> str:
        cmd = [self.binary, *args]
        if self.kubeconfig:
            cmd.append(f"--kubeconfig={self.kubeconfig}")
        logger.debug("Running %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError:
            raise CommandError(cmd, 127, f"{self.binary}: command not found") from None
        if result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr or result.stdout)
        return result.stdout


def _condition_true(obj: dict[str, Any], kind: str) -> bool:
    for cond in obj.get("status", {}).get("conditions", []) or []:
        if cond.get("type") == kind:
            return cond.get("status") == "True"
    return False
