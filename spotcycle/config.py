"""Settings loaded from the environment, overridable from the CLI."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path

from spotcycle.exceptions import ValidationError

DEFAULT_API_BASE = "https://spot.rackspace.com/api/v1"
DEFAULT_WAIT_TIMEOUT = 300


def default_token_cache(environ: Mapping[str, str]) -> Path:
    return Path(environ.get("XDG_RUNTIME_DIR") or "/tmp") / "spot_token.json"


@dataclass(frozen=True)
class Weights:
    vcpu: float = 1.0
    memory: float = 0.5
    gpu: float = 4.0

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.vcpu, self.memory, self.gpu)


@dataclass(frozen=True)
class Settings:
    """Everything the orchestrator reads from its surroundings.

    Built once by the CLI (``Settings.from_env``) and passed down explicitly;
    nothing below the CLI looks at ``os.environ``.
    """

    api_base: str = DEFAULT_API_BASE
    api_token: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    org_namespace: str | None = None
    weights: Weights = Weights()
    token_cache: Path = Path("/tmp/spot_token.json")
    http_timeout: float = 30.0
    kubeconfig_path: Path = Path.home() / ".kube" / "config"
    terraform_dir: Path = Path(".")
    workload_namespace: str = "code-server"
    workload_selector: str = "app.kubernetes.io/name=code-server"
    helm_release: str = "code-server"
    helm_chart: str = "pascaliske/code-server"
    helm_repo: str = "https://pascaliske.github.io/helm-charts"
    helm_values: Path = Path("values.yaml")
    service_type: str = "LoadBalancer"
    webhook_url: str | None = None
    region: str | None = None
    wait_timeout: int = DEFAULT_WAIT_TIMEOUT

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> Settings:
        env = os.environ if environ is None else environ
        settings = cls(
            api_base=env.get("SPOT_API_BASE") or DEFAULT_API_BASE,
            api_token=env.get("SPOT_API_TOKEN") or None,
            client_id=env.get("SPOT_CLIENT_ID") or None,
            client_secret=env.get("SPOT_CLIENT_SECRET") or None,
            org_namespace=env.get("SPOT_ORG_NAMESPACE") or None,
            weights=Weights(
                vcpu=_float(env, "VCPU_WEIGHT", 1.0),
                memory=_float(env, "MEM_WEIGHT", 0.5),
                gpu=_float(env, "GPU_WEIGHT", 4.0),
            ),
            token_cache=Path(env["SPOT_TOKEN_CACHE"]) if env.get("SPOT_TOKEN_CACHE") else default_token_cache(env),
            http_timeout=_float(env, "SPOT_HTTP_TIMEOUT", 30.0),
            kubeconfig_path=Path(env.get("KUBECONFIG_PATH") or "~/.kube/config").expanduser(),
            terraform_dir=Path(env.get("TERRAFORM_DIR") or "."),
            workload_namespace=env.get("SPOT_WORKLOAD_NAMESPACE") or "code-server",
            workload_selector=env.get("SPOT_WORKLOAD_SELECTOR") or "app.kubernetes.io/name=code-server",
            helm_release=env.get("SPOT_HELM_RELEASE") or "code-server",
            helm_chart=env.get("SPOT_HELM_CHART") or "pascaliske/code-server",
            helm_repo=env.get("SPOT_HELM_REPO") or "https://pascaliske.github.io/helm-charts",
            helm_values=Path(env.get("SPOT_HELM_VALUES") or "values.yaml"),
            service_type=env.get("SPOT_SERVICE_TYPE") or "LoadBalancer",
            webhook_url=env.get("SPOT_WEBHOOK_URL") or None,
        )
        return settings.with_overrides(**overrides)

    def with_overrides(self, **overrides) -> Settings:
        """Apply CLI overrides, ignoring options left unset (None)."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValidationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def require_namespace(self) -> str:
        if not self.org_namespace:
            raise ValidationError(
                "SPOT_ORG_NAMESPACE is required",
                hint="export SPOT_ORG_NAMESPACE=<your organization namespace>",
            )
        return self.org_namespace


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number, got {raw!r}") from None
