"""
Core configuration module for the MailSync service.

All settings are read from environment variables (optionally loaded from a
``.env`` file) into a single Config dataclass shared by every component.
"""

import os
from dataclasses import dataclass
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


@dataclass
class Config:
    """
    Application configuration.

    Centralizes all configuration settings with proper type hints
    and default values from environment variables.
    """

    # PostgreSQL Configuration
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "mailsync")
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "mailsync")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "secure_password")

    # Flask Configuration
    FLASK_HOST: str = os.getenv("FLASK_HOST", "0.0.0.0")
    FLASK_PORT: int = int(os.getenv("FLASK_PORT", "3000"))
    FLASK_DEBUG: bool = os.getenv("FLASK_DEBUG", "False").lower() == "true"
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")

    # Logging
    LOG_DIR: str = os.getenv("LOG_DIR", "logs")

    # Scheduler settings
    SCHEDULER_POLL_SECONDS_BUSY: float = float(os.getenv('SCHEDULER_POLL_SECONDS_BUSY', '10'))
    SCHEDULER_POLL_SECONDS_IDLE: float = float(os.getenv('SCHEDULER_POLL_SECONDS_IDLE', '30'))

    # Sync settings
    SYNC_PAGE_SIZE: int = int(os.getenv('SYNC_PAGE_SIZE', '100'))
    SYNC_LOCK_TIMEOUT_SECONDS: int = int(os.getenv('SYNC_LOCK_TIMEOUT_SECONDS', '900'))
    SYNC_MAX_RETRIES: int = int(os.getenv('SYNC_MAX_RETRIES', '3'))
    SYNC_BACKOFF_BASE_SECONDS: float = float(os.getenv('SYNC_BACKOFF_BASE_SECONDS', '2'))
    SYNC_BACKOFF_MAX_SECONDS: float = float(os.getenv('SYNC_BACKOFF_MAX_SECONDS', '60'))
    PROVIDER_REQUEST_TIMEOUT_SECONDS: float = float(os.getenv('PROVIDER_REQUEST_TIMEOUT_SECONDS', '30'))

    # Real-time delivery
    MIN_POLL_INTERVAL_SECONDS: int = int(os.getenv('MIN_POLL_INTERVAL_SECONDS', '60'))
    DEFAULT_POLL_INTERVAL_SECONDS: int = int(os.getenv('DEFAULT_POLL_INTERVAL_SECONDS', '300'))
    WEBHOOK_BASE_URL: str = os.getenv('WEBHOOK_BASE_URL', '')
    GRAPH_SUBSCRIPTION_MINUTES: int = int(os.getenv('GRAPH_SUBSCRIPTION_MINUTES', '4200'))
    SUBSCRIPTION_RENEW_BEFORE_SECONDS: int = int(os.getenv('SUBSCRIPTION_RENEW_BEFORE_SECONDS', '3600'))
    SUBSCRIPTION_RETRY_SECONDS: int = int(os.getenv('SUBSCRIPTION_RETRY_SECONDS', '900'))
    GMAIL_PUBSUB_TOPIC: str = os.getenv('GMAIL_PUBSUB_TOPIC', '')
    GMAIL_PUSH_VERIFICATION_TOKEN: str = os.getenv('GMAIL_PUSH_VERIFICATION_TOKEN', '')

    # Learning pipeline
    LEARNING_BATCH_SIZE: int = int(os.getenv('LEARNING_BATCH_SIZE', '10'))
    LEARNING_BATCH_PAUSE_SECONDS: float = float(os.getenv('LEARNING_BATCH_PAUSE_SECONDS', '1.0'))
    LEARNING_JOB_TIMEOUT_SECONDS: float = float(os.getenv('LEARNING_JOB_TIMEOUT_SECONDS', '21600'))
    LEARNING_MAX_MESSAGES: int = int(os.getenv('LEARNING_MAX_MESSAGES', '1000'))
    LEARNING_DAYS_BACK: int = int(os.getenv('LEARNING_DAYS_BACK', '90'))

    # Chat Model Configuration
    CHAT_MODEL: str = os.getenv('CHAT_MODEL', 'mistral:latest')
    CHAT_BASE_URL: str = os.getenv(
        'CHAT_BASE_URL',
        f"http://{os.getenv('OLLAMA_CHAT_HOST','localhost')}:{os.getenv('OLLAMA_CHAT_PORT','11434')}"
    )
    CHAT_TEMPERATURE: float = float(os.getenv('CHAT_TEMPERATURE', '0.1'))

    # Microsoft Graph application credentials
    GRAPH_TENANT_ID: str = os.getenv('GRAPH_TENANT_ID', '')
    GRAPH_CLIENT_ID: str = os.getenv('GRAPH_CLIENT_ID', '')
    GRAPH_CLIENT_SECRET: str = os.getenv('GRAPH_CLIENT_SECRET', '')
