"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON / console logging
    errors          — exception hierarchy & handlers
    database        — async SQLAlchemy engine & session factory
    tables          — ORM tables for alerts and workflow state
"""
