"""Bearer credential acquisition and caching."""

from __future__ import annotations

import json
import logging
import os
import stat
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import httpx

from spotcycle.config import Settings
from spotcycle.exceptions import AuthError
from spotcycle.models import extract_error_message

logger = logging.getLogger("spotcycle.auth")

# Seconds subtracted from the advertised lifetime before a token is cached.
EXPIRY_MARGIN = 30
DEFAULT_TTL = 3600


class CredentialOrigin(str, Enum):
    STATIC = "static-token"
    EXCHANGED = "exchanged"


@dataclass(frozen=True)
class Credential:
    value: str = field(repr=False)
    expires_at: float | None
    origin: CredentialOrigin

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def __repr__(self) -> str:
        return f"Credential(value='***', expires_at={self.expires_at}, origin={self.origin.value})"


class CredentialStore:
    """Hands out a bearer credential, exchanging client credentials when needed.

    Resolution order: static token, unexpired cache entry, client-credentials
    exchange. No retry happens here; failures propagate as :class:`AuthError`.

    The cache file is shared by every process using the same path and is not
    locked. Two concurrent exchanges simply both write; the later one wins.
    """

    def __init__(
        self,
        settings: Settings,
        http: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.cache_path = Path(settings.token_cache)
        self._http = http
        self._clock = clock
        self._current: Credential | None = None

    def get_token(self) -> Credential:
        if self.settings.api_token:
            return Credential(self.settings.api_token, None, CredentialOrigin.STATIC)

        now = self._clock()
        if self._current is not None and not self._current.expired(now):
            return self._current

        cached = self._load_cache()
        if cached is not None and not cached.expired(now):
            logger.debug("Using cached token (expires at %d)", cached.expires_at)
            self._current = cached
            return cached

        if self.settings.client_id and self.settings.client_secret:
            self._current = self._exchange(now)
            return self._current

        raise AuthError("missing credentials: set SPOT_API_TOKEN or SPOT_CLIENT_ID+SPOT_CLIENT_SECRET")

    def clear(self) -> None:
        """Forget the cached credential (memory and disk)."""
        self._current = None
        if self.cache_path.exists():
            self.cache_path.unlink()

    # -- Internal --

    def _exchange(self, now: float) -> Credential:
        url = f"{self.settings.api_base.rstrip('/')}/oauth/token"
        logger.debug("Fetching token via client_credentials")
        payload = {
            "grant_type": "client_credentials",
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
        }
        http = self._http or httpx.Client(timeout=self.settings.http_timeout)
        try:
            resp = http.post(url, json=payload)
        except httpx.HTTPError as e:
            raise AuthError(f"Token exchange failed: {e}") from e
        finally:
            if self._http is None:
                http.close()

        body = _json_or_text(resp)
        if not 200 <= resp.status_code < 300:
            raise AuthError(f"Token exchange failed ({resp.status_code}): {extract_error_message(body)}")

        token = None
        ttl = DEFAULT_TTL
        if isinstance(body, dict):
            token = body.get("access_token") or body.get("id_token")
            try:
                ttl = int(body.get("expires_in") or DEFAULT_TTL)
            except (TypeError, ValueError):
                ttl = DEFAULT_TTL
        if not token:
            raise AuthError(f"Failed to obtain token from {url}")

        credential = Credential(token, now + ttl - EXPIRY_MARGIN, CredentialOrigin.EXCHANGED)
        self._save_cache(credential)
        return credential

    def _load_cache(self) -> Credential | None:
        if not self.cache_path.exists():
            return None
        try:
            data = json.loads(self.cache_path.read_text())
            token = data.get("token")
            expiry = float(data.get("expiry"))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.debug("Ignoring unreadable token cache %s: %s", self.cache_path, e)
            return None
        if not token:
            return None
        return Credential(token, expiry, CredentialOrigin.EXCHANGED)

    def _save_cache(self, credential: Credential) -> None:
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps({"token": credential.value, "expiry": int(credential.expires_at)})
        fd = os.open(
            str(self.cache_path),
            os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
            stat.S_IRUSR | stat.S_IWUSR,
        )
        with os.fdopen(fd, "w") as f:
            f.write(content)


def _json_or_text(resp: httpx.Response):
    try:
        return resp.json()
    except ValueError:
        return resp.text
