import httpx
import pytest

from spotcycle.api import RetryPolicy, SpotClient
from spotcycle.config import Settings
from spotcycle.session import Session


@pytest.fixture
def settings(tmp_path):
    return Settings(
        api_base="https://spot.test/api/v1",
        api_token="tok-123",
        org_namespace="org-abc",
        token_cache=tmp_path / "spot_token.json",
        kubeconfig_path=tmp_path / "kubeconfig",
        terraform_dir=tmp_path / "tf",
        helm_values=tmp_path / "values.yaml",
    )


@pytest.fixture
def make_client(settings):
    """Build a SpotClient whose HTTP layer is a handler function."""
    clients = []

    def factory(handler, retry=None, session_settings=None):
        session = Session.from_settings(session_settings or settings)
        client = SpotClient(
            session,
            retry=retry or RetryPolicy(),
            transport=httpx.MockTransport(handler),
            sleep=lambda seconds: None,
        )
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()
