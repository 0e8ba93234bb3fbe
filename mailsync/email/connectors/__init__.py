"""Provider connector implementations package.

- EmailConnector: Abstract base class defining the connector interface
- IMAPConnector: Generic IMAP servers (UIDVALIDITY/UID cursor, no push)
- GmailConnector: Gmail API (historyId cursor, Pub/Sub watch)
- GraphConnector: Microsoft Graph (delta link cursor, subscriptions)

Example Usage:
    from mailsync.email.connectors import build_connector

    connector = build_connector(account.provider, credential_provider)
    page = connector.fetch_page(account, "INBOX", cursor=None)
"""

from typing import Dict, Optional, Type

from ..models import ProviderKind
from .base import EmailConnector
from .gmail_connector import GmailConnector
from .graph_connector import GraphConnector
from .imap_connector import IMAPConnector

CONNECTOR_TYPES: Dict[ProviderKind, Type[EmailConnector]] = {
    ProviderKind.IMAP: IMAPConnector,
    ProviderKind.GMAIL: GmailConnector,
    ProviderKind.GRAPH: GraphConnector,
}


def build_connector(
    provider: ProviderKind,
    credentials,
    *,
    timeout: float = 30.0,
    gmail_topic: Optional[str] = None,
) -> EmailConnector:
    """Instantiate the connector for ``provider``."""
    kind = ProviderKind(provider)
    if kind is ProviderKind.GMAIL:
        return GmailConnector(credentials, timeout=timeout, topic_name=gmail_topic)
    return CONNECTOR_TYPES[kind](credentials, timeout=timeout)


__all__ = [
    "EmailConnector",
    "IMAPConnector",
    "GmailConnector",
    "GraphConnector",
    "CONNECTOR_TYPES",
    "build_connector",
]
