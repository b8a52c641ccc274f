"""Session -- the explicit value threaded through every component."""

from __future__ import annotations

from dataclasses import dataclass

from spotcycle.auth import Credential, CredentialStore
from spotcycle.config import Settings


@dataclass
class Session:
    """Credentials and organization scope for one run."""

    settings: Settings
    credentials: CredentialStore

    @classmethod
    def from_settings(cls, settings: Settings, **store_kwargs) -> Session:
        return cls(settings=settings, credentials=CredentialStore(settings, **store_kwargs))

    @property
    def api_base(self) -> str:
        return self.settings.api_base.rstrip("/")

    @property
    def namespace(self) -> str:
        return self.settings.require_namespace()

    def credential(self) -> Credential:
        return self.credentials.get_token()

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.credential().value}"}

    def reset_credentials(self) -> bool:
        """Forget an exchanged credential so the next request exchanges again.

        Returns False when the credential is a static token, which cannot be
        renewed.
        """
        if self.settings.api_token:
            return False
        self.credentials.clear()
        return True
