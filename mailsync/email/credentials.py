"""Credential collaborator for provider connectors.

Connectors call :meth:`CredentialProvider.get_credential` before each provider
request and never refresh tokens themselves. After an auth failure the
orchestrator calls :meth:`CredentialProvider.invalidate` and retries once.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import msal
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from mailsync.utils.crypto import decrypt

from .errors import AuthError, TransientNetwork
from .models import Account, ProviderKind

logger = logging.getLogger(__name__)

GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]


@dataclass
class PasswordCredential:
    """Username/password pair for IMAP logins."""
    username: str
    password: str


class CredentialProvider(ABC):
    """Source of current credentials for an account."""

    @abstractmethod
    def get_credential(self, account: Account) -> Any:
        """Return a credential usable by the account's connector.

        Raises :class:`AuthError` when no valid credential can be produced.
        """

    def invalidate(self, account: Account) -> None:
        """Drop any cached credential so the next call fetches a fresh one."""


class StoredCredentialProvider(CredentialProvider):
    """Credentials derived from account settings.

    - IMAP: ``settings["username"]`` and a Fernet encrypted ``settings["password"]``
    - Gmail: an authorized-user token file (``settings["token_path"]``) or an
      encrypted authorized-user JSON blob (``settings["token"]``)
    - Graph: app-only tokens from MSAL using the tenant/client configured on the
      account or passed to the constructor
    """

    def __init__(
        self,
        *,
        graph_tenant_id: Optional[str] = None,
        graph_client_id: Optional[str] = None,
        graph_client_secret: Optional[str] = None,
    ) -> None:
        self.graph_tenant_id = graph_tenant_id
        self.graph_client_id = graph_client_id
        self.graph_client_secret = graph_client_secret
        self._lock = threading.Lock()
        self._google_creds: Dict[str, Credentials] = {}
        self._msal_apps: Dict[str, msal.ConfidentialClientApplication] = {}
        self._force_refresh: Set[str] = set()

    def get_credential(self, account: Account) -> Any:
        if account.provider is ProviderKind.IMAP:
            return self._imap_credential(account)
        if account.provider is ProviderKind.GMAIL:
            return self._gmail_credential(account)
        if account.provider is ProviderKind.GRAPH:
            return self._graph_token(account)
        raise AuthError(f"No credential source for provider {account.provider}")

    def invalidate(self, account: Account) -> None:
        with self._lock:
            self._google_creds.pop(account.id, None)
            self._force_refresh.add(account.id)
        logger.info("Invalidated cached credentials for account %s", account.id)

    # ------------------------------------------------------------------
    def _imap_credential(self, account: Account) -> PasswordCredential:
        stored = account.settings.get("password")
        if not stored:
            raise AuthError(f"IMAP account {account.id} has no stored password")
        try:
            password = decrypt(stored)
        except (ValueError, RuntimeError) as exc:
            raise AuthError(f"Cannot decrypt IMAP password for account {account.id}: {exc}") from exc
        return PasswordCredential(
            username=account.settings.get("username") or account.email_address,
            password=password,
        )

    # ------------------------------------------------------------------
    def _load_google_credentials(self, account: Account) -> Credentials:
        token_path = account.settings.get("token_path")
        if token_path:
            if not os.path.exists(token_path):
                raise AuthError(f"Gmail token file {token_path} not found for account {account.id}")
            return Credentials.from_authorized_user_file(token_path)
        blob = account.settings.get("token")
        if not blob:
            raise AuthError(f"No Gmail token configured for account {account.id}")
        try:
            info = json.loads(decrypt(blob))
        except (ValueError, RuntimeError) as exc:
            raise AuthError(f"Cannot read Gmail token for account {account.id}: {exc}") from exc
        return Credentials.from_authorized_user_info(info)

    def _gmail_credential(self, account: Account) -> Credentials:
        with self._lock:
            creds = self._google_creds.get(account.id)
            force = account.id in self._force_refresh
            self._force_refresh.discard(account.id)
        if creds is None:
            creds = self._load_google_credentials(account)

        if force or not creds.valid:
            if not creds.refresh_token:
                raise AuthError(f"Gmail token for account {account.id} expired and cannot be refreshed")
            try:
                creds.refresh(Request())
            except RefreshError as exc:
                raise AuthError(f"Failed to refresh Gmail token for account {account.id}: {exc}") from exc
            except TransportError as exc:
                raise TransientNetwork(f"Gmail token endpoint unreachable: {exc}") from exc
            token_path = account.settings.get("token_path")
            if token_path:
                with open(token_path, "w") as fh:
                    fh.write(creds.to_json())
            logger.info("Refreshed Gmail credentials for account %s", account.id)

        with self._lock:
            self._google_creds[account.id] = creds
        return creds

    # ------------------------------------------------------------------
    def _msal_app(self, account: Account, fresh: bool = False) -> msal.ConfidentialClientApplication:
        """Shared MSAL app per tenant and client; ``fresh`` replaces it and its token cache."""
        tenant = account.settings.get("tenant_id") or self.graph_tenant_id
        client_id = account.settings.get("client_id") or self.graph_client_id
        secret = self.graph_client_secret
        if account.settings.get("client_secret"):
            try:
                secret = decrypt(account.settings["client_secret"])
            except (ValueError, RuntimeError) as exc:
                raise AuthError(f"Cannot decrypt Graph client secret for account {account.id}: {exc}") from exc
        if not (tenant and client_id and secret):
            raise AuthError(f"Graph app credentials are not configured for account {account.id}")
        key = f"{tenant}:{client_id}"
        with self._lock:
            app = None if fresh else self._msal_apps.get(key)
            if app is None:
                app = msal.ConfidentialClientApplication(
                    client_id,
                    authority=f"https://login.microsoftonline.com/{tenant}",
                    client_credential=secret,
                )
                self._msal_apps[key] = app
        return app

    def _graph_token(self, account: Account) -> str:
        with self._lock:
            force = account.id in self._force_refresh
            self._force_refresh.discard(account.id)
        # acquire_token_for_client serves cached tokens, so a forced refresh needs an empty cache
        app = self._msal_app(account, fresh=force)
        result = None if force else app.acquire_token_silent(GRAPH_SCOPES, account=None)
        if not result:
            result = app.acquire_token_for_client(scopes=GRAPH_SCOPES)
        if "access_token" in result:
            return result["access_token"]
        error = result.get("error_description", result.get("error", "Unknown error"))
        raise AuthError(f"Failed to acquire Graph token for account {account.id}: {error}")
