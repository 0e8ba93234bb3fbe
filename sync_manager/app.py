"""
Main application class for the MailSync service.

This module contains the MailSyncApplication class that wires configuration,
persistence, provider connectors, the sync engine, the real-time manager,
the learning pipeline and the web interface together.
"""

import logging
import threading
from typing import Any, Dict, Optional

from flask import Flask

from mailsync.core.repository import SyncRepository
from mailsync.email.connectors import build_connector
from mailsync.email.connectors.base import EmailConnector
from mailsync.email.content_cache import ContentCache
from mailsync.email.credentials import CredentialProvider, StoredCredentialProvider
from mailsync.email.index_writer import IndexWriter
from mailsync.email.models import Account, LearningOptions, ProviderKind, SyncOptions, SyncResult
from mailsync.email.orchestrator import SyncOrchestrator
from mailsync.email.sync_state import SyncStateStore
from mailsync.learning import LearningPipeline, OllamaPatternAnalyzer, PatternAnalyzer

from .core.config import Config
from .realtime_manager import RealTimeSyncManager
from .utils.logger import setup_logging
from .web.routes import WebRoutes

logger = logging.getLogger(__name__)


class MailSyncApplication:
    """
    Main application class that wires the sync engine and its triggers.

    Collaborators can be injected for tests and tools; anything left out is
    built from ``Config``.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        repository: Optional[SyncRepository] = None,
        credentials: Optional[CredentialProvider] = None,
        analyzer: Optional[PatternAnalyzer] = None,
        configure_logging: bool = True,
    ) -> None:
        """Initialize the MailSync application."""
        self.config = config or Config()
        if configure_logging:
            setup_logging(self.config.LOG_DIR)

        self.postgres_manager = None
        self.repository = repository or self._initialize_repository()
        self.credentials = credentials or StoredCredentialProvider(
            graph_tenant_id=self.config.GRAPH_TENANT_ID or None,
            graph_client_id=self.config.GRAPH_CLIENT_ID or None,
            graph_client_secret=self.config.GRAPH_CLIENT_SECRET or None,
        )
        self._connectors: Dict[ProviderKind, EmailConnector] = {}
        self._connectors_lock = threading.Lock()

        self.state_store = SyncStateStore(
            self.repository, lock_timeout_seconds=self.config.SYNC_LOCK_TIMEOUT_SECONDS
        )
        self.index_writer = IndexWriter(self.repository)
        self.content_cache = ContentCache(self.repository, self.connector_for)
        self.orchestrator = SyncOrchestrator(
            self.repository,
            self.state_store,
            self.index_writer,
            self.connector_for,
            self.credentials,
            page_size=self.config.SYNC_PAGE_SIZE,
            max_retries=self.config.SYNC_MAX_RETRIES,
            backoff_base_seconds=self.config.SYNC_BACKOFF_BASE_SECONDS,
            backoff_max_seconds=self.config.SYNC_BACKOFF_MAX_SECONDS,
        )
        self.realtime_manager = RealTimeSyncManager(
            self.repository, self.orchestrator, self.connector_for, self.config
        )
        self.learning_pipeline = LearningPipeline(
            self.repository,
            self.content_cache,
            analyzer or OllamaPatternAnalyzer(
                model=self.config.CHAT_MODEL,
                base_url=self.config.CHAT_BASE_URL,
                temperature=self.config.CHAT_TEMPERATURE,
            ),
            batch_pause_seconds=self.config.LEARNING_BATCH_PAUSE_SECONDS,
            job_timeout_seconds=self.config.LEARNING_JOB_TIMEOUT_SECONDS,
            default_options=LearningOptions(
                batch_size=self.config.LEARNING_BATCH_SIZE,
                max_messages=self.config.LEARNING_MAX_MESSAGES,
                days_back=self.config.LEARNING_DAYS_BACK or None,
            ),
        )

        self.app = Flask(__name__)
        self.app.config['SECRET_KEY'] = self.config.SECRET_KEY
        self.web_routes = WebRoutes(self.app, self.config, self)
        logger.info("MailSync application initialized")

    def _initialize_repository(self) -> SyncRepository:
        """Initialize the PostgreSQL-backed repository."""
        from mailsync.core.postgres_manager import PostgreSQLConfig, PostgreSQLManager
        from mailsync.core.postgres_repository import PostgreSQLSyncRepository

        postgres_config = PostgreSQLConfig(
            host=self.config.POSTGRES_HOST,
            port=self.config.POSTGRES_PORT,
            database=self.config.POSTGRES_DB,
            user=self.config.POSTGRES_USER,
            password=self.config.POSTGRES_PASSWORD,
        )
        self.postgres_manager = PostgreSQLManager(postgres_config)
        logger.info("PostgreSQL repository initialized")
        return PostgreSQLSyncRepository(self.postgres_manager)

    def connector_for(self, account: Account) -> EmailConnector:
        """Return the shared connector for the account's provider."""
        with self._connectors_lock:
            connector = self._connectors.get(account.provider)
            if connector is None:
                connector = build_connector(
                    account.provider,
                    self.credentials,
                    timeout=self.config.PROVIDER_REQUEST_TIMEOUT_SECONDS,
                    gmail_topic=self.config.GMAIL_PUBSUB_TOPIC or None,
                )
                self._connectors[account.provider] = connector
            return connector

    # ------------------------------------------------------------------
    # Trigger surface
    # ------------------------------------------------------------------
    def run_sync(
        self,
        account_id: str,
        folder: Optional[str] = None,
        max_messages: Optional[int] = None,
        full_resync: bool = False,
    ) -> SyncResult:
        """Synchronously sync one folder (the first configured one by default)."""
        options = SyncOptions(max_messages=max_messages, full_resync=full_resync)
        return self.orchestrator.run_sync(account_id, folder, options)

    def submit_learning_job(
        self,
        account_id: str,
        user_id: str,
        options: Optional[LearningOptions] = None,
        **overrides: Any,
    ) -> str:
        """Queue a learning job; keyword overrides replace fields of the default options."""
        if options is None:
            defaults = self.learning_pipeline.default_options
            options = LearningOptions(
                force_relearn=overrides.get('force_relearn', defaults.force_relearn),
                batch_size=overrides.get('batch_size', defaults.batch_size),
                max_messages=overrides.get('max_messages', defaults.max_messages),
                days_back=overrides.get('days_back', defaults.days_back),
            )
        return self.learning_pipeline.submit(account_id, user_id, options)

    def close(self) -> None:
        if self.postgres_manager is not None:
            self.postgres_manager.close()

    def run(self) -> None:
        """
        Run the Flask application.

        Starts the scheduler thread and then the web server that receives
        provider webhooks and operator requests.
        """
        logger.info(f"Starting MailSync on {self.config.FLASK_HOST}:{self.config.FLASK_PORT}")
        self.realtime_manager.start_scheduler()
        self.app.run(
            host=self.config.FLASK_HOST,
            port=self.config.FLASK_PORT,
            debug=self.config.FLASK_DEBUG,
            use_reloader=False,
        )


if __name__ == "__main__":
    app = MailSyncApplication()
    app.run()
