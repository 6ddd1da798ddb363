"""Sync module - push/pull queue engine.

Architecture:
    domain/     - Pure domain entities, ports, query builder and events
    use_cases/  - Queue processing (push processor, pull populator/drainer)
    adapters/   - Infrastructure implementations (PostgreSQL, OData, in-memory)
    api/        - On-demand HTTP endpoints (FastAPI)
"""
