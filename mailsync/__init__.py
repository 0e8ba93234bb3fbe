"""
Mail synchronization engine.

This package provides the provider-facing half of the system:
- email/: Provider connectors, sync state, index writer, content cache and orchestration
- learning/: Background pattern-learning pipeline over the synced index
- core/: Persistence contract and the PostgreSQL implementation
- utils/: Common utilities (credential encryption)
"""
