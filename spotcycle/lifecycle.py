"""Lifecycle orchestrator: provision, deploy, pause, resume, status."""

from __future__ import annotations

import logging
import os
import stat
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from spotcycle.api import SpotClient
from spotcycle.choices import ChoiceSource
from spotcycle.config import Settings
from spotcycle.deploy import STORAGE_CLASSES, HelmDeployer, validate_storage_class
from spotcycle.exceptions import (
    ApiError,
    AuthError,
    ClusterUnreachable,
    CommandError,
    InvalidTransition,
    SpotCycleError,
    ValidationError,
    WorkloadStillRunning,
    degraded,
)
from spotcycle.infra import TerraformWorkspace
from spotcycle.kube import Kubectl
from spotcycle.models import (
    AccessEndpoint,
    Cloudspace,
    LifecycleReport,
    LifecycleState,
    MarketSample,
    Region,
    ServerClass,
)
from spotcycle.pricing import (
    DEFAULT_BID_PRICE,
    DEFAULT_METRIC,
    BidStrategy,
    bid_below_recommendation,
    compute_bid,
    monthly_cost,
    rank_server_classes,
    recommended_bid,
)
from spotcycle.session import Session

# Progress goes to stderr; stdout carries only command results.
console = Console(stderr=True)
logger = logging.getLogger("spotcycle.lifecycle")

CREATE_NEW = "new"
DEFAULT_REGION = "us-east-iad-1"
DEFAULT_NODE_COUNT = 1

S = LifecycleState

# Legal moves; entries from an observed state start an operation.
_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    S.ABSENT: frozenset({S.PROVISIONING}),
    S.RUNNING: frozenset({S.PROVISIONING, S.PAUSING, S.RESUMING}),
    S.PAUSED: frozenset({S.PAUSING, S.RESUMING}),
    S.FAILED: frozenset({S.PROVISIONING, S.PAUSING, S.RESUMING}),
    S.PROVISIONING: frozenset({S.RUNNING, S.FAILED}),
    S.PAUSING: frozenset({S.PAUSED, S.FAILED}),
    S.RESUMING: frozenset({S.RUNNING, S.FAILED}),
}

_ENTRY_HINTS = {
    S.PAUSING: "nothing to pause; run `spotcycle provision` first",
    S.RESUMING: "nothing to resume; run `spotcycle provision` first",
    S.PROVISIONING: "run `spotcycle status` to see the observed state",
}


@dataclass
class Check:
    name: str
    status: str  # ok | warn | fail | skipped
    detail: str = ""


@dataclass
class StatusReport:
    state: LifecycleState
    checks: list[Check] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(c.status != "fail" for c in self.checks)

    def as_dict(self) -> dict:
        return {
            "state": self.state.value,
            "ok": self.ok,
            "checks": [{"name": c.name, "status": c.status, "detail": c.detail} for c in self.checks],
        }


class Orchestrator:
    """Drives one managed cloudspace through its lifecycle.

    Every operation is safe to re-run. State is observed from the Terraform
    variable file at the start of each call and nothing is rolled back on
    failure.
    """

    def __init__(
        self,
        session: Session,
        client: SpotClient,
        choices: ChoiceSource,
        infra: TerraformWorkspace,
        kube_factory: Callable[[Path | None], Kubectl],
        deployer: HelmDeployer,
        settings: Settings | None = None,
        dry_run: bool = False,
        metric: str = DEFAULT_METRIC,
    ) -> None:
        self.session = session
        self.settings = settings or session.settings
        self.client = client
        self.choices = choices
        self.infra = infra
        self.deployer = deployer
        self.kube_factory = kube_factory
        self.metric = metric
        self.dry_run = dry_run
        self.state = LifecycleState.ABSENT
        self.planned: list[str] = []

    # -- State --

    def observe_state(self) -> LifecycleState:
        """Lifecycle state as recorded in the Terraform variable file."""
        count = self.infra.node_count()
        if count is None:
            return S.ABSENT
        return S.PAUSED if count == 0 else S.RUNNING

    def _transition(self, target: LifecycleState) -> None:
        if target not in _TRANSITIONS.get(self.state, frozenset()):
            raise InvalidTransition(
                f"Cannot move from {self.state.value} to {target.value}",
                hint=_ENTRY_HINTS.get(target),
            )
        logger.debug("State %s -> %s", self.state.value, target.value)
        self.state = target

    def _operate(self, in_progress: LifecycleState, body: Callable[[], LifecycleReport]) -> LifecycleReport:
        self.planned = []
        observed = self.observe_state()
        self.state = observed
        self._transition(in_progress)
        try:
            report = body()
        except Exception:
            self.state = S.FAILED
            raise
        if self.dry_run:
            # Nothing was changed, so the observed state still holds.
            self.state = observed
        else:
            self._transition(S.PAUSED if in_progress is S.PAUSING else S.RUNNING)
        report.state = self.state
        report.dry_run = self.dry_run
        report.planned = list(self.planned)
        return report

    # -- Operations --

    def provision(self) -> LifecycleReport:
        """Absent -> Provisioning -> Running."""
        return self._operate(S.PROVISIONING, self._provision)

    def deploy(self) -> LifecycleReport:
        """Deploy onto a cloudspace whose infrastructure already exists."""
        return self._operate(S.PROVISIONING, self._deploy_only)

    def pause(self) -> LifecycleReport:
        """Running -> Pausing -> Paused. Persistent volumes are never touched."""
        return self._operate(S.PAUSING, self._pause)

    def resume(self) -> LifecycleReport:
        """Paused -> Resuming -> Running."""
        return self._operate(S.RESUMING, self._resume)

    def status(self) -> StatusReport:
        """Read-only reachability and scope checks."""
        self.state = self.observe_state()
        report = StatusReport(state=self.state)
        if self.dry_run:
            ns = self.settings.org_namespace or "<unset>"
            for name, detail in (
                ("namespace", f"Would validate SPOT_ORG_NAMESPACE: {ns}"),
                ("regions", "Would check API connectivity to /regions"),
                ("organization", f"Would check organization access to /organizations/{ns}/cloudspaces"),
                ("cluster", "Would verify Kubernetes cluster access (if a kubeconfig exists)"),
            ):
                report.checks.append(Check(name, "skipped", detail))
            return report

        try:
            ns = self.settings.require_namespace()
            credential = self.session.credential()
        except (AuthError, ValidationError) as e:
            report.checks.append(Check("credentials", "fail", str(e)))
            return report
        report.checks.append(Check("credentials", "ok", f"{credential.origin.value} token"))

        try:
            regions = self.client.list_regions()
            if regions:
                report.checks.append(Check("regions", "ok", f"Found {len(regions)} region(s)"))
            else:
                report.checks.append(Check("regions", "fail", "No regions returned by /regions"))
        except SpotCycleError as e:
            report.checks.append(Check("regions", "fail", f"{e} ({e.hint})"))

        try:
            self.client.validate_token()
            report.checks.append(Check("token", "ok", "API token validated"))
        except ApiError as e:
            status = "warn" if e.status == 404 else "fail"
            report.checks.append(Check("token", status, str(e)))
        except AuthError as e:
            report.checks.append(Check("token", "fail", str(e)))

        try:
            cloudspaces = self.client.list_cloudspaces()
            report.checks.append(Check(
                "organization", "ok", f"Found {len(cloudspaces)} cloudspace(s) for organization {ns}",
            ))
        except SpotCycleError as e:
            report.checks.append(Check(
                "organization", "fail",
                f"Failed to access cloudspaces for organization {ns}: {e}",
            ))

        kubeconfig = self.settings.kubeconfig_path
        if kubeconfig.exists():
            kube = self.kube_factory(kubeconfig)
            if kube.reachable():
                try:
                    nodes = kube.ready_nodes()
                    report.checks.append(Check("cluster", "ok", f"Cluster accessible with {len(nodes)} Ready node(s)"))
                except CommandError as e:
                    report.checks.append(Check("cluster", "warn", str(e)))
            else:
                report.checks.append(Check("cluster", "warn", "Kubernetes cluster not accessible"))
        else:
            report.checks.append(Check("cluster", "warn", f"No kubeconfig at {kubeconfig}; skipping cluster check"))

        report.checks.append(Check("lifecycle", "ok", f"Observed state: {self.state.value}"))
        return report

    def rank_catalog(self, region: str) -> list[ServerClass]:
        classes = self.client.list_server_classes(region)
        ranked = rank_server_classes(classes, self.metric, self.settings.weights)
        if not ranked:
            raise ValidationError(f"No serverclass candidates found for region {region}")
        return ranked

    # -- Operation bodies --

    def _provision(self) -> LifecycleReport:
        self.session.credential()
        self._check_access()
        self._show_limits()

        region = self._select_region()
        cloudspace = self._select_or_create_cloudspace(region)

        ranked = self.rank_catalog(region.code)
        self._show_ranking(ranked, region.code)
        server_class = self._select_server_class(ranked)

        sample = self._market_sample(region.code, server_class.code)
        bid = self._select_bid(sample)
        storage_class = self._select_storage_class(region.generation)
        node_count = self._select_node_count()
        self._show_costs(server_class, bid, node_count)

        self._apply({
            "node_count": node_count,
            "bid_price": bid,
            "region": region.code,
            "server_class": server_class.code,
            "organization_namespace": self.session.namespace,
            "storage_class": storage_class,
            "cloudspace_id": cloudspace.id,
        })
        self._reread_node_pools(cloudspace)

        kubeconfig = self._fetch_kubeconfig(cloudspace)
        endpoint = self._deploy_and_wait(kubeconfig, server_class.gpu_count)
        return LifecycleReport(
            operation="provision",
            state=self.state,
            region=region.code,
            cloudspace_id=cloudspace.id,
            server_class=server_class.code,
            bid_price=bid,
            node_count=node_count,
            endpoint=endpoint,
        )

    def _deploy_only(self) -> LifecycleReport:
        self.session.credential()
        self._check_access()

        cloudspaces = self.client.list_cloudspaces()
        if self.settings.region:
            cloudspaces = [cs for cs in cloudspaces if cs.region == self.settings.region]
        if not cloudspaces:
            raise ValidationError(
                "No available cloudspaces found.",
                hint="run `spotcycle provision` to create one",
            )
        for cs in cloudspaces:
            console.print(f"  [cyan]{cs.id}[/cyan] {cs.describe()}")
        ids = [cs.id for cs in cloudspaces]
        chosen = self.choices.choose(
            "cloudspace", "Select a cloudspace", ids, default=ids[0] if len(ids) == 1 else None,
        )
        cloudspace = self.client.get_cloudspace(chosen)
        self._check_cloudspace_scope(cloudspace)
        logger.info("Cloudspace accessibility validated: %s", cloudspace.id)

        kubeconfig = self._fetch_kubeconfig(cloudspace)
        self._register_webhook(cloudspace.id)
        gpu_count = self._gpu_count(cloudspace)
        endpoint = self._deploy_and_wait(kubeconfig, gpu_count)
        return LifecycleReport(
            operation="deploy",
            state=self.state,
            region=cloudspace.region,
            cloudspace_id=cloudspace.id,
            endpoint=endpoint,
        )

    def _pause(self) -> LifecycleReport:
        ns = self.settings.workload_namespace
        selector = self.settings.workload_selector
        kube = self._require_cluster()

        nodes = kube.workload_nodes(ns, selector)
        if not nodes:
            console.print("No active workload pods found. Skipping drain.")
        for node in nodes:
            if self.dry_run:
                self._plan(f"cordon and drain node {node}")
                continue
            with console.status(f"Draining node [bold]{node}[/bold]..."):
                kube.cordon(node)
                try:
                    kube.drain(node, timeout=self.settings.wait_timeout)
                except CommandError as e:
                    logger.warning("Failed to drain %s: %s", node, e)

        running = kube.running_pods(ns, selector)
        if running and not self.dry_run:
            raise WorkloadStillRunning(running)
        if not running:
            console.print("No running workload pods remain.")

        tfvars = self.infra.read_vars()
        self._apply({"node_count": 0})
        self._preemption_followup(tfvars)
        return LifecycleReport(
            operation="pause",
            state=self.state,
            region=tfvars.get("region"),
            cloudspace_id=tfvars.get("cloudspace_id"),
            server_class=tfvars.get("server_class"),
            node_count=0,
        )

    def _resume(self) -> LifecycleReport:
        tfvars = self.infra.read_vars()
        count = self._select_node_count()
        region = tfvars.get("region") or self.settings.region
        server_class = tfvars.get("server_class")

        updates: dict = {"node_count": count}
        bid = tfvars.get("bid_price")
        if region and server_class:
            sample = self._market_sample(region, server_class)
            if sample is not None and bid is not None and bid_below_recommendation(float(bid), sample.price):
                suggested = recommended_bid(sample.price)
                logger.warning("Current bid $%s below recommended (market * 1.1)", bid)
                if self.choices.confirm("raise_bid", f"Update bid to ${suggested}?", default=False):
                    updates["bid_price"] = suggested
                    bid = suggested
        self._apply(updates)

        kubeconfig = self.settings.kubeconfig_path
        if self.dry_run:
            self._plan(f"wait for {count} node(s) Ready and PVCs Bound")
        else:
            kube = self._require_cluster()
            timeout = self.settings.wait_timeout
            with console.status(f"Waiting for {count} node(s) to join the cluster..."):
                kube.wait_nodes_ready(count, timeout=timeout)
            with console.status("Waiting for PVCs to bind..."):
                kube.wait_pvcs_bound(self.settings.workload_namespace, timeout=timeout)

        gpu_count = self._gpu_count_for(region, server_class) if region and server_class else 0
        endpoint = self._deploy_and_wait(kubeconfig, gpu_count)
        return LifecycleReport(
            operation="resume",
            state=self.state,
            region=region,
            cloudspace_id=tfvars.get("cloudspace_id"),
            server_class=server_class,
            bid_price=float(bid) if bid is not None else None,
            node_count=count,
            endpoint=endpoint,
        )

    # -- Steps --

    def _plan(self, action: str) -> None:
        self.planned.append(action)
        console.print(f"[yellow][DRY-RUN][/yellow] Would {action}")

    def _check_access(self) -> None:
        ns = self.session.namespace
        try:
            self.client.validate_token()
            logger.info("API token validated successfully.")
        except ApiError as e:
            if e.status != 404:
                raise
            degraded(logger, "Token validation endpoint unavailable", e)
        namespaces = self.client.list_organizations()
        if ns not in namespaces:
            raise ValidationError(
                f"Token does not have access to namespace '{ns}'. "
                f"Available namespaces: {', '.join(namespaces) or 'none'}",
                hint="check organization scope (SPOT_ORG_NAMESPACE)",
            )
        logger.info("Namespace access verified: %s", ns)

    def _check_cloudspace_scope(self, cloudspace: Cloudspace) -> None:
        ns = self.session.namespace
        if cloudspace.organization and cloudspace.organization != ns:
            raise ValidationError(
                f"Cloudspace organization/namespace '{cloudspace.organization}' "
                f"does not match SPOT_ORG_NAMESPACE '{ns}'",
                hint="check organization scope (SPOT_ORG_NAMESPACE)",
            )

    def _show_limits(self) -> None:
        try:
            limits = self.client.limits()
        except SpotCycleError as e:
            degraded(logger, "Could not retrieve account limits", e)
            return
        table = Table(title="Account Limits and Quotas", show_header=True)
        table.add_column("Limit", style="cyan")
        table.add_column("Value", justify="right")
        for key, value in sorted(limits.items()):
            table.add_row(str(key), str(value))
        console.print(table)

    def _select_region(self) -> Region:
        regions = self.client.list_regions()
        if not regions:
            raise ValidationError("Failed to fetch regions from API")
        by_code = {r.code: r for r in regions}
        if self.settings.region:
            if self.settings.region not in by_code:
                raise ValidationError(
                    f"Invalid region: {self.settings.region}. Available: {', '.join(by_code)}"
                )
            region = by_code[self.settings.region]
        else:
            default = DEFAULT_REGION if DEFAULT_REGION in by_code else regions[0].code
            code = self.choices.choose("region", "Select the REGION", list(by_code), default=default)
            region = by_code[code]
        logger.info("Selected REGION: %s (%s)", region.code, region.generation.upper())
        return region

    def _select_or_create_cloudspace(self, region: Region) -> Cloudspace:
        existing = [cs for cs in self.client.list_cloudspaces() if cs.region == region.code]
        for cs in existing:
            self._check_cloudspace_scope(cs)
            console.print(f"  [cyan]{cs.id}[/cyan] {cs.describe()}")
        options = [CREATE_NEW, *(cs.id for cs in existing)]
        chosen = self.choices.choose(
            "cloudspace", "Select the cloudspace (new or existing id)", options, default=CREATE_NEW,
        )
        if chosen != CREATE_NEW:
            cloudspace = self.client.get_cloudspace(chosen)
            self._check_cloudspace_scope(cloudspace)
            logger.info("Reusing cloudspace %s", cloudspace.id)
            return cloudspace

        name = f"spot-cloudspace-{int(time.time())}"
        if self.dry_run:
            self._plan(f"create cloudspace {name} in {region.code}")
            return Cloudspace(id=f"<planned:{name}>", name=name, region=region.code, generation=region.generation)
        with console.status(f"Creating cloudspace [bold]{name}[/bold]..."):
            cloudspace_id = self.client.create_cloudspace(name, region.code)
        cloudspace = self.client.get_cloudspace(cloudspace_id)
        console.print(f"Created cloudspace: [bold]{cloudspace.id}[/bold]")
        return cloudspace

    def _select_server_class(self, ranked: list[ServerClass]) -> ServerClass:
        by_code = {sc.code: sc for sc in ranked}
        code = self.choices.choose(
            "server_class", "Select the SERVER_CLASS (best value first)", list(by_code), default=ranked[0].code,
        )
        chosen = by_code[code]
        if chosen.has_gpu:
            logger.info("Detected GPU server class: %s (%d GPU)", chosen.code, chosen.gpu_count)
        return chosen

    def _market_sample(self, region: str, server_class: str) -> MarketSample | None:
        try:
            sample = self.client.market_price(region, server_class)
        except SpotCycleError as e:
            degraded(logger, f"SERVER_CLASS {server_class} market price unavailable in {region}", e)
            return None
        logger.info("Market price for %s in %s: $%s", server_class, region, sample.price)
        return sample

    def _select_bid(self, sample: MarketSample | None) -> float:
        if sample is None:
            market = DEFAULT_BID_PRICE
            logger.warning("Market price unavailable, using default: $%s", market)
        else:
            market = sample.price
        for strategy in BidStrategy:
            console.print(f"  {strategy.value}: {strategy.label}")
        strategy = self.choices.choose(
            "bid_strategy", "Select Bid Management Strategy",
            [s.value for s in BidStrategy], default=BidStrategy.CONSERVATIVE.value,
        )
        custom = None
        if strategy == BidStrategy.CUSTOM.value:
            custom = self.choices.ask("bid", "Enter custom bid price")
        bid = compute_bid(strategy, market, custom)
        logger.info("Selected BID_PRICE: $%s (%s)", bid, strategy)
        return bid

    def _select_node_count(self) -> int:
        raw = self.choices.ask("nodes", "Enter NODE_COUNT", default=str(DEFAULT_NODE_COUNT))
        try:
            count = int(str(raw).strip())
        except ValueError:
            count = 0
        if count < 1:
            raise ValidationError(f"NODE_COUNT must be a positive integer, got: {raw}")
        return count

    def _select_storage_class(self, generation: str) -> str:
        options = list(STORAGE_CLASSES.get(generation, STORAGE_CLASSES["gen1"]))
        chosen = self.choices.choose(
            "storage_class", f"Select the STORAGE_CLASS ({generation} compatible)", options, default=options[0],
        )
        return validate_storage_class(chosen, generation)

    def _apply(self, variables: dict) -> None:
        self.infra.validate()
        if self.dry_run:
            rendered = ", ".join(f"{k}={v}" for k, v in variables.items())
            self._plan(f"set {rendered} in {self.infra.vars_path} and run terraform apply")
            return
        self.infra.env["TF_VAR_spot_token"] = self.session.credential().value
        self.infra.write_vars(variables)
        with console.status("Initializing Terraform..."):
            self.infra.init()
        with console.status("Applying Terraform configuration..."):
            self.infra.apply()
        console.print("[green]Terraform apply completed.[/green]")

    def _reread_node_pools(self, cloudspace: Cloudspace) -> None:
        if self.dry_run:
            return
        try:
            pools = self.client.list_node_pools(cloudspace.id)
        except SpotCycleError as e:
            degraded(logger, f"Could not retrieve node pools for {cloudspace.id}", e)
            return
        for pool in pools:
            logger.info(
                "Node pool %s: %s desired=%d observed=%s bid=%s",
                pool.id, pool.server_class, pool.desired_count, pool.observed_count, pool.bid_price,
            )

    def _fetch_kubeconfig(self, cloudspace: Cloudspace) -> Path:
        path = self.settings.kubeconfig_path
        if self.dry_run:
            self._plan(f"download kubeconfig for {cloudspace.id} to {path}")
            return path
        content = self.client.kubeconfig(cloudspace.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
        with os.fdopen(fd, "w") as f:
            f.write(content)
        logger.info("KUBECONFIG written to %s", path)
        return path

    def _require_cluster(self) -> Kubectl:
        path = self.settings.kubeconfig_path
        if not path.exists():
            raise ValidationError(
                f"KUBECONFIG_PATH file does not exist: {path}",
                hint="set KUBECONFIG_PATH or run `spotcycle deploy` to fetch it",
            )
        kube = self.kube_factory(path)
        if not kube.reachable():
            raise ClusterUnreachable(f"Cluster connectivity failed using {path}")
        return kube

    def _deploy_and_wait(self, kubeconfig: Path, gpu_count: int) -> AccessEndpoint | None:
        ns = self.settings.workload_namespace
        selector = self.settings.workload_selector
        if self.dry_run:
            self._plan(f"helm upgrade --install {self.deployer.release} ({self.deployer.chart}) into {ns}")
            self._plan(f"wait for pods {selector} Ready")
            return None
        kube = self._require_cluster()
        with console.status("Deploying workload via Helm..."):
            self.deployer.deploy(kubeconfig, gpu_count=gpu_count)
        with console.status("Waiting for pods to be ready..."):
            kube.wait_pods_ready(ns, selector, timeout=self.settings.wait_timeout)

        try:
            address = kube.service_address(ns, selector)
            service = kube.service_name(ns, selector) or self.deployer.release
        except CommandError as e:
            degraded(logger, "External address lookup failed", e)
            address, service = None, self.deployer.release
        endpoint = AccessEndpoint(address=address, namespace=ns, service=service)
        console.print(Panel(endpoint.instructions, title="Workload Ready"))
        return endpoint

    def _register_webhook(self, cloudspace_id: str) -> None:
        url = self.settings.webhook_url
        if not url:
            logger.info("SPOT_WEBHOOK_URL not set; skipping preemption webhook")
            return
        if self.dry_run:
            self._plan(f"register preemption webhook {url} for {cloudspace_id}")
            return
        try:
            self.client.register_preemption_webhook(cloudspace_id, url)
        except SpotCycleError as e:
            degraded(logger, "Failed to setup preemption webhook", e)
            return
        logger.info("Preemption webhook configured for cloudspace %s", cloudspace_id)

    def _preemption_followup(self, tfvars: dict) -> None:
        cloudspace_id = tfvars.get("cloudspace_id")
        region = tfvars.get("region") or self.settings.region
        try:
            if not cloudspace_id and region:
                matches = [cs.id for cs in self.client.list_cloudspaces() if cs.region == region]
                cloudspace_id = matches[0] if matches else None
            if not cloudspace_id:
                degraded(logger, f"No cloudspace found in {region or 'unknown region'}")
                return
            status = self.client.preemption_status(str(cloudspace_id))
        except SpotCycleError as e:
            degraded(logger, "Preemption status unavailable", e)
            return
        if status.get("preemptionNotice"):
            logger.warning(
                "Preemption notice detected during pause; nodes may be terminated. "
                "Consider increasing bid price before resuming"
            )
        self._register_webhook(str(cloudspace_id))

    def _gpu_count(self, cloudspace: Cloudspace) -> int:
        pools = cloudspace.node_pools
        if not pools:
            try:
                pools = tuple(self.client.list_node_pools(cloudspace.id))
            except SpotCycleError as e:
                degraded(logger, "Could not read node pools for GPU detection", e)
                return 0
        return max(
            (self._gpu_count_for(cloudspace.region, p.server_class) for p in pools if p.server_class),
            default=0,
        )

    def _gpu_count_for(self, region: str, server_class: str) -> int:
        try:
            classes = self.client.list_server_classes(region)
        except SpotCycleError as e:
            degraded(logger, "Could not read the catalog for GPU detection", e)
            return 0
        for sc in classes:
            if sc.code == server_class:
                return sc.gpu_count
        return 0

    # -- Display --

    def _show_ranking(self, ranked: list[ServerClass], region: str) -> None:
        table = Table(title=f"Server Classes in {region} ({self.metric})", show_header=True)
        table.add_column("#", justify="right", style="dim")
        table.add_column("Class", style="cyan")
        table.add_column("vCPU", justify="right")
        table.add_column("Mem GB", justify="right")
        table.add_column("GPU", justify="right")
        table.add_column("$/hr", justify="right", style="green")
        table.add_column("Score", justify="right")
        for i, sc in enumerate(ranked, 1):
            table.add_row(
                str(i), sc.code, f"{sc.vcpu:g}", f"{sc.memory_gb:g}", str(sc.gpu_count),
                f"${sc.price_per_hour:.4f}", f"{sc.score:.6f}",
            )
        console.print(table)

    def _show_costs(self, server_class: ServerClass, bid: float, nodes: int) -> None:
        console.print(
            Panel(
                f"[bold]{server_class.code}[/bold] x{nodes} @ bid [green]${bid:.3f}/hr[/green]\n"
                f"Hourly (max): ${bid * nodes:.3f}   Monthly (approx): ${monthly_cost(bid, nodes):.2f}",
                title="Cost Estimation",
            )
        )
