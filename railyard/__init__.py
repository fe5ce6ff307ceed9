"""
Railyard - Wagon State Ingestion Service

Normalizes human-typed train indexes and applies wagon updates from RabbitMQ
and CSV uploads to PostgreSQL exactly once per logical update.
"""

__version__ = "0.1.0"
