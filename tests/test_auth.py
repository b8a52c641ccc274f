import json
import stat

import httpx
import pytest

from spotcycle.auth import EXPIRY_MARGIN, CredentialOrigin, CredentialStore
from spotcycle.config import Settings
from spotcycle.exceptions import AuthError


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def exchange_settings(tmp_path):
    return Settings(
        api_base="https://spot.test/api/v1",
        client_id="client",
        client_secret="secret",
        token_cache=tmp_path / "spot_token.json",
    )


@pytest.fixture
def token_server():
    """OAuth endpoint issuing token-1, token-2 ... and counting exchanges."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        return httpx.Response(200, json={"access_token": f"token-{len(calls)}", "expires_in": 3600})

    http = httpx.Client(transport=httpx.MockTransport(handler))
    yield http, calls
    http.close()


class TestExchange:
    def test_reacquire_before_expiry_reuses_token(self, exchange_settings, token_server):
        http, calls = token_server
        clock = FakeClock()
        store = CredentialStore(exchange_settings, http=http, clock=clock)

        first = store.get_token()
        clock.now += 3600 - EXPIRY_MARGIN - 1
        second = store.get_token()

        assert first.value == second.value == "token-1"
        assert first.origin is CredentialOrigin.EXCHANGED
        assert len(calls) == 1
        assert calls[0]["grant_type"] == "client_credentials"

    def test_reacquire_after_expiry_exchanges_once(self, exchange_settings, token_server):
        http, calls = token_server
        clock = FakeClock()
        store = CredentialStore(exchange_settings, http=http, clock=clock)

        store.get_token()
        clock.now += 3600
        renewed = store.get_token()
        again = store.get_token()

        assert renewed.value == again.value == "token-2"
        assert len(calls) == 2

    def test_cache_file_is_private_and_shared(self, exchange_settings, token_server):
        http, calls = token_server
        clock = FakeClock()
        CredentialStore(exchange_settings, http=http, clock=clock).get_token()

        cache = exchange_settings.token_cache
        assert stat.S_IMODE(cache.stat().st_mode) == 0o600
        data = json.loads(cache.read_text())
        assert data == {"token": "token-1", "expiry": int(clock.now + 3600 - EXPIRY_MARGIN)}

        other = CredentialStore(exchange_settings, http=http, clock=clock)
        assert other.get_token().value == "token-1"
        assert len(calls) == 1

    def test_corrupt_cache_is_ignored(self, exchange_settings, token_server):
        http, calls = token_server
        exchange_settings.token_cache.write_text("{not json")
        store = CredentialStore(exchange_settings, http=http, clock=FakeClock())
        assert store.get_token().value == "token-1"
        assert len(calls) == 1

    def test_id_token_and_default_ttl(self, exchange_settings):
        def handler(request):
            return httpx.Response(200, json={"id_token": "id-tok"})

        with httpx.Client(transport=httpx.MockTransport(handler)) as http:
            clock = FakeClock()
            credential = CredentialStore(exchange_settings, http=http, clock=clock).get_token()
        assert credential.value == "id-tok"
        assert credential.expires_at == clock.now + 3600 - EXPIRY_MARGIN

    def test_rejected_exchange(self, exchange_settings):
        def handler(request):
            return httpx.Response(401, json={"error": "invalid_client"})

        with httpx.Client(transport=httpx.MockTransport(handler)) as http:
            store = CredentialStore(exchange_settings, http=http, clock=FakeClock())
            with pytest.raises(AuthError, match="invalid_client"):
                store.get_token()

    def test_response_without_token(self, exchange_settings):
        def handler(request):
            return httpx.Response(200, json={"expires_in": 60})

        with httpx.Client(transport=httpx.MockTransport(handler)) as http:
            store = CredentialStore(exchange_settings, http=http, clock=FakeClock())
            with pytest.raises(AuthError, match="Failed to obtain token"):
                store.get_token()

    def test_clear_forgets_cache(self, exchange_settings, token_server):
        http, calls = token_server
        store = CredentialStore(exchange_settings, http=http, clock=FakeClock())
        store.get_token()
        store.clear()
        assert not exchange_settings.token_cache.exists()
        assert store.get_token().value == "token-2"


class TestStaticAndMissing:
    def test_static_token_wins(self, tmp_path):
        settings = Settings(api_token="static", client_id="c", client_secret="s", token_cache=tmp_path / "t.json")
        credential = CredentialStore(settings).get_token()
        assert credential.value == "static"
        assert credential.origin is CredentialOrigin.STATIC
        assert not credential.expired(10**12)

    def test_missing_credentials(self, tmp_path):
        store = CredentialStore(Settings(token_cache=tmp_path / "t.json"))
        with pytest.raises(AuthError, match="missing credentials"):
            store.get_token()

    def test_repr_masks_token(self, tmp_path):
        settings = Settings(api_token="super-secret", token_cache=tmp_path / "t.json")
        assert "super-secret" not in repr(CredentialStore(settings).get_token())
