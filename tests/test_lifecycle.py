import logging
import stat
import time

import pytest

from spotcycle.choices import PresetChoices
from spotcycle.exceptions import (
    ApiError,
    ClusterUnreachable,
    InvalidTransition,
    ValidationError,
    WorkloadStillRunning,
)
from spotcycle.infra import TerraformWorkspace
from spotcycle.lifecycle import Orchestrator
from spotcycle.models import Cloudspace, LifecycleState, MarketSample, NodePool, Region, ServerClass
from spotcycle.session import Session

DFW = "us-central-dfw-1"
SMALL = ServerClass("gp.vs1.small-dfw", vcpu=2, memory_gb=4, price_per_hour=0.03)
GPU = ServerClass("gpu.vs1.medium-dfw", vcpu=4, memory_gb=16, price_per_hour=0.20, gpu_count=1)


class FakeClient:
    def __init__(self):
        self.regions = [Region(DFW), Region("us-east-iad-1")]
        self.organizations = ["org-abc"]
        self.cloudspaces = {}
        self.classes = [GPU, SMALL]
        self.price = 0.03
        self.preemption = {}
        self.token_error = None
        self.calls = []
        self.created = []
        self.webhooks = []

    def validate_token(self):
        self.calls.append("validate_token")
        if self.token_error:
            raise self.token_error

    def list_organizations(self):
        return list(self.organizations)

    def limits(self):
        return {"cloudspaces": 5, "nodes": 20}

    def list_regions(self):
        self.calls.append("list_regions")
        return list(self.regions)

    def list_cloudspaces(self):
        return list(self.cloudspaces.values())

    def get_cloudspace(self, cloudspace_id):
        return self.cloudspaces[cloudspace_id]

    def create_cloudspace(self, name, region):
        self.calls.append("create_cloudspace")
        cs = Cloudspace(id="cs-new", name=name, region=region, organization="org-abc")
        self.cloudspaces[cs.id] = cs
        self.created.append(cs)
        return cs.id

    def list_server_classes(self, region):
        self.calls.append("list_server_classes")
        return list(self.classes)

    def market_price(self, region, server_class):
        if isinstance(self.price, Exception):
            raise self.price
        return MarketSample(region, server_class, self.price, time.time())

    def list_node_pools(self, cloudspace_id):
        self.calls.append("list_node_pools")
        return [NodePool("np-1", cloudspace_id, SMALL.code, 0.033, 1, 1)]

    def kubeconfig(self, cloudspace_id):
        return f"apiVersion: v1\n# {cloudspace_id}\n"

    def register_preemption_webhook(self, cloudspace_id, url, warning_minutes=5):
        self.webhooks.append((cloudspace_id, url))

    def preemption_status(self, cloudspace_id):
        self.calls.append("preemption_status")
        return self.preemption


class FakeKube:
    def __init__(self):
        self.is_reachable = True
        self.nodes = ["node-a", "node-b"]
        self.running = []
        self.address = "203.0.113.7"
        self.events = []

    def reachable(self):
        self.events.append("reachable")
        return self.is_reachable

    def workload_nodes(self, namespace, selector):
        return list(self.nodes)

    def running_pods(self, namespace, selector):
        return list(self.running)

    def ready_nodes(self):
        return list(self.nodes)

    def cordon(self, node):
        self.events.append(f"cordon {node}")

    def drain(self, node, timeout=300):
        self.events.append(f"drain {node}")
        self.nodes = [n for n in self.nodes if n != node]

    def wait_nodes_ready(self, count, timeout=300):
        self.events.append(f"wait_nodes {count}")

    def wait_pvcs_bound(self, namespace, timeout=300):
        self.events.append("wait_pvcs")

    def wait_pods_ready(self, namespace, selector, timeout=300):
        self.events.append("wait_pods")

    def service_address(self, namespace, selector):
        return self.address

    def service_name(self, namespace, selector):
        return "code-server"


class FakeDeployer:
    release = "code-server"
    chart = "pascaliske/code-server"

    def __init__(self):
        self.deploys = []

    def deploy(self, kubeconfig, gpu_count=0):
        self.deploys.append((str(kubeconfig), gpu_count))


class RecordingWorkspace(TerraformWorkspace):
    def __init__(self, directory):
        super().__init__(directory)
        self.commands = []

    def _run(self, args):
        self.commands.append((args[0], dict(self.env)))
        return ""


@pytest.fixture
def world(settings):
    settings.terraform_dir.mkdir()
    client = FakeClient()
    kube = FakeKube()
    deployer = FakeDeployer()
    infra = RecordingWorkspace(settings.terraform_dir)

    def build(answers=None, dry_run=False, **overrides):
        effective = settings.with_overrides(**overrides)
        return Orchestrator(
            Session.from_settings(effective),
            client,
            PresetChoices(answers or {}),
            infra,
            lambda path: kube,
            deployer,
            settings=effective,
            dry_run=dry_run,
        )

    class World:
        pass

    w = World()
    w.settings, w.client, w.kube, w.deployer, w.infra, w.build = settings, client, kube, deployer, infra, build
    return w


def write_tfvars(world, text):
    (world.settings.terraform_dir / "terraform.tfvars").write_text(text)


RUNNING_VARS = (
    'region = "us-central-dfw-1"\n'
    'server_class = "gp.vs1.small-dfw"\n'
    "bid_price = 0.033\n"
    "node_count = 2\n"
    'cloudspace_id = "cs-1"\n'
)


class TestProvision:
    def test_end_to_end(self, world):
        orchestrator = world.build(region=DFW)

        report = orchestrator.provision()

        assert orchestrator.state is LifecycleState.RUNNING
        assert report.state is LifecycleState.RUNNING
        assert (report.region, report.server_class, report.bid_price, report.node_count) == (
            DFW, SMALL.code, 0.033, 1,
        )
        assert report.cloudspace_id == "cs-new"
        assert report.endpoint.url == "http://203.0.113.7"

        tfvars = world.infra.read_vars()
        assert tfvars == {
            "node_count": 1,
            "bid_price": 0.033,
            "region": DFW,
            "server_class": SMALL.code,
            "organization_namespace": "org-abc",
            "storage_class": "gen1-storage1",
            "cloudspace_id": "cs-new",
        }
        assert "tok-123" not in world.infra.vars_path.read_text()
        assert [cmd for cmd, _ in world.infra.commands] == ["init", "apply"]
        assert world.infra.commands[1][1]["TF_VAR_spot_token"] == "tok-123"

        kubeconfig = world.settings.kubeconfig_path
        assert stat.S_IMODE(kubeconfig.stat().st_mode) == 0o600
        assert "cs-new" in kubeconfig.read_text()
        assert world.deployer.deploys == [(str(kubeconfig), 0)]
        assert world.kube.events[-1] == "wait_pods"

    def test_cloudspace_exists_before_catalog_calls(self, world):
        world.build(region=DFW).provision()
        calls = world.client.calls
        assert calls.index("create_cloudspace") < calls.index("list_server_classes")
        assert calls.index("create_cloudspace") < calls.index("list_node_pools")

    def test_gpu_class_enables_gpu_flags(self, world):
        world.build({"server_class": GPU.code, "bid_strategy": "balanced"}, region=DFW).provision()
        assert world.deployer.deploys[0][1] == 1
        assert world.infra.read_vars()["bid_price"] == round(0.03 * 1.25, 3)

    def test_market_unavailable_uses_default_bid(self, world, caplog):
        world.client.price = ApiError(503, "down")
        with caplog.at_level(logging.WARNING):
            report = world.build(region=DFW).provision()
        assert report.bid_price == 0.033
        assert "DegradedWarning" in caplog.text

    def test_reuses_existing_cloudspace(self, world):
        world.client.cloudspaces["cs-1"] = Cloudspace("cs-1", "dev", DFW, organization="org-abc")
        report = world.build({"cloudspace": "cs-1"}, region=DFW).provision()
        assert report.cloudspace_id == "cs-1"
        assert world.client.created == []

    def test_foreign_cloudspace_rejected(self, world):
        world.client.cloudspaces["cs-x"] = Cloudspace("cs-x", "other", DFW, organization="org-zzz")
        orchestrator = world.build(region=DFW)
        with pytest.raises(ValidationError, match="does not match SPOT_ORG_NAMESPACE"):
            orchestrator.provision()
        assert orchestrator.state is LifecycleState.FAILED

    def test_namespace_outside_token_scope(self, world):
        world.client.organizations = ["org-other"]
        orchestrator = world.build(region=DFW)
        with pytest.raises(ValidationError, match="does not have access to namespace 'org-abc'"):
            orchestrator.provision()
        assert orchestrator.state is LifecycleState.FAILED
        assert world.client.created == []
        assert not world.infra.vars_path.exists()

    def test_missing_validation_endpoint_is_degraded(self, world):
        world.client.token_error = ApiError(404, "not found")
        assert world.build(region=DFW).provision().state is LifecycleState.RUNNING

    def test_rejected_token_is_fatal(self, world):
        world.client.token_error = ApiError(401, "expired")
        with pytest.raises(ApiError):
            world.build(region=DFW).provision()
        assert "list_regions" not in world.client.calls

    def test_unknown_region(self, world):
        with pytest.raises(ValidationError, match="Invalid region"):
            world.build(region="mars-1").provision()

    def test_invalid_node_count(self, world):
        with pytest.raises(ValidationError, match="NODE_COUNT"):
            world.build({"nodes": "0"}, region=DFW).provision()

    def test_gen2_region_uses_gen2_storage(self, world):
        world.client.regions = [Region("us-west-sjc-1", "gen2")]
        world.build(region="us-west-sjc-1").provision()
        assert world.infra.read_vars()["storage_class"] == "gen2-storage1"

    def test_wrong_generation_storage_rejected(self, world):
        with pytest.raises(ValidationError):
            world.build({"storage_class": "gen2-storage1"}, region=DFW).provision()

    def test_dry_run_changes_nothing(self, world):
        orchestrator = world.build(dry_run=True, region=DFW)

        report = orchestrator.provision()

        assert world.client.created == []
        assert not world.infra.vars_path.exists()
        assert world.infra.commands == []
        assert not world.settings.kubeconfig_path.exists()
        assert world.deployer.deploys == []
        assert orchestrator.state is LifecycleState.ABSENT
        assert report.dry_run
        assert any(p.startswith("create cloudspace") for p in report.planned)
        assert any("terraform apply" in p for p in report.planned)
        assert "list_server_classes" in world.client.calls

    def test_reprovision_from_running(self, world):
        write_tfvars(world, RUNNING_VARS)
        assert world.build(region=DFW).provision().state is LifecycleState.RUNNING


class TestPause:
    @pytest.fixture(autouse=True)
    def running(self, world):
        write_tfvars(world, RUNNING_VARS)
        world.settings.kubeconfig_path.write_text("apiVersion: v1\n")

    def test_pause_twice(self, world):
        first = world.build().pause()
        assert first.state is LifecycleState.PAUSED
        assert world.kube.events[:5] == ["reachable", "cordon node-a", "drain node-a", "cordon node-b", "drain node-b"]
        assert world.infra.node_count() == 0
        assert world.infra.read_vars()["server_class"] == SMALL.code

        second = world.build().pause()
        assert second.state is LifecycleState.PAUSED
        assert world.infra.node_count() == 0
        assert [cmd for cmd, _ in world.infra.commands].count("apply") == 2

    def test_unreachable_cluster_stops_before_anything(self, world):
        world.kube.is_reachable = False
        orchestrator = world.build()
        with pytest.raises(ClusterUnreachable):
            orchestrator.pause()
        assert world.kube.events == ["reachable"]
        assert world.infra.node_count() == 2
        assert orchestrator.state is LifecycleState.FAILED

    def test_pods_still_running(self, world):
        world.kube.running = ["code-server-0"]
        with pytest.raises(WorkloadStillRunning) as exc:
            world.build().pause()
        assert exc.value.pods == ["code-server-0"]
        assert world.infra.node_count() == 2
        assert world.infra.commands == []

    def test_missing_kubeconfig(self, world):
        world.settings.kubeconfig_path.unlink()
        with pytest.raises(ValidationError, match="KUBECONFIG_PATH"):
            world.build().pause()

    def test_preemption_notice_is_a_warning(self, world, caplog):
        world.client.preemption = {"preemptionNotice": True}
        with caplog.at_level(logging.WARNING, logger="spotcycle.lifecycle"):
            report = world.build(webhook_url="https://hooks.example/spot").pause()
        assert report.state is LifecycleState.PAUSED
        assert "Preemption notice detected" in caplog.text
        assert world.client.webhooks == [("cs-1", "https://hooks.example/spot")]

    def test_no_webhook_without_url(self, world):
        world.build().pause()
        assert world.client.webhooks == []
        assert "preemption_status" in world.client.calls

    def test_dry_run(self, world):
        orchestrator = world.build(dry_run=True)
        report = orchestrator.pause()
        assert world.infra.node_count() == 2
        assert "cordon node-a" not in world.kube.events
        assert "cordon and drain node node-a" in report.planned
        assert orchestrator.state is LifecycleState.RUNNING

    def test_pause_without_infrastructure(self, world):
        world.infra.vars_path.unlink()
        orchestrator = world.build()
        with pytest.raises(InvalidTransition):
            orchestrator.pause()
        assert world.kube.events == []


class TestResume:
    @pytest.fixture(autouse=True)
    def paused(self, world):
        write_tfvars(world, RUNNING_VARS.replace("node_count = 2", "node_count = 0"))
        world.settings.kubeconfig_path.write_text("apiVersion: v1\n")

    def test_resume(self, world):
        orchestrator = world.build({"nodes": 2})
        report = orchestrator.resume()

        assert report.state is LifecycleState.RUNNING
        assert world.infra.node_count() == 2
        assert world.kube.events.index("wait_nodes 2") < world.kube.events.index("wait_pvcs")
        assert world.kube.events[-1] == "wait_pods"
        assert world.deployer.deploys == [(str(world.settings.kubeconfig_path), 0)]
        assert report.endpoint.service == "code-server"

    def test_bid_raised_when_below_market(self, world):
        world.client.price = 0.05
        report = world.build({"raise_bid": True}).resume()
        assert world.infra.read_vars()["bid_price"] == 0.055
        assert report.bid_price == 0.055

    def test_bid_kept_when_declined(self, world):
        world.client.price = 0.05
        world.build().resume()
        assert world.infra.read_vars()["bid_price"] == 0.033

    def test_port_forward_when_no_address(self, world):
        world.kube.address = None
        report = world.build().resume()
        assert report.endpoint.url is None
        assert "port-forward" in report.endpoint.instructions

    def test_resume_without_infrastructure(self, world):
        world.infra.vars_path.unlink()
        with pytest.raises(InvalidTransition):
            world.build().resume()


class TestDeployOnly:
    def test_single_cloudspace(self, world):
        pools = (NodePool("np-1", "cs-1", GPU.code, 0.25, 1, 1),)
        world.client.cloudspaces["cs-1"] = Cloudspace("cs-1", "dev", DFW, node_pools=pools, organization="org-abc")

        report = world.build(webhook_url="https://hooks.example/spot").deploy()

        assert report.cloudspace_id == "cs-1"
        assert world.settings.kubeconfig_path.exists()
        assert world.deployer.deploys[0][1] == 1
        assert world.client.webhooks == [("cs-1", "https://hooks.example/spot")]

    def test_ambiguous_cloudspace_needs_answer(self, world):
        world.client.cloudspaces["cs-1"] = Cloudspace("cs-1", "a", DFW)
        world.client.cloudspaces["cs-2"] = Cloudspace("cs-2", "b", DFW)
        with pytest.raises(ValidationError, match="cloudspace"):
            world.build().deploy()
        assert world.build({"cloudspace": "cs-2"}).deploy().cloudspace_id == "cs-2"

    def test_no_cloudspaces(self, world):
        with pytest.raises(ValidationError, match="No available cloudspaces"):
            world.build().deploy()


class TestStatus:
    def test_all_checks(self, world):
        write_tfvars(world, RUNNING_VARS)
        world.settings.kubeconfig_path.write_text("apiVersion: v1\n")

        report = world.build().status()

        assert report.ok
        assert report.state is LifecycleState.RUNNING
        statuses = {c.name: c.status for c in report.checks}
        assert statuses == {
            "credentials": "ok", "regions": "ok", "token": "ok",
            "organization": "ok", "cluster": "ok", "lifecycle": "ok",
        }

    def test_cluster_is_only_a_warning(self, world):
        report = world.build().status()
        assert report.ok
        assert {c.name: c.status for c in report.checks}["cluster"] == "warn"
        assert report.state is LifecycleState.ABSENT

    def test_missing_credentials_fail(self, world):
        report = world.build(api_token="").status()
        assert not report.ok
        assert report.checks[0].name == "credentials"

    def test_dry_run_makes_no_calls(self, world):
        report = world.build(dry_run=True).status()
        assert world.client.calls == []
        assert all(c.status == "skipped" for c in report.checks)
