"""
Orders Service package.

Consumes order events from Kafka, persists them to PostgreSQL and serves
them over HTTP through a bounded in-memory cache. Key modules include:

- app.main: FastAPI app, lifecycle and ingestion supervision
- app.models: Order, Delivery, Payment and Item models
- app.cache: Bounded concurrent order cache
- app.kafka: Kafka consumer with manual offset commits
- app.ingestion: Per-message ingestion state machine
- app.persistence: Order store contract and PostgreSQL implementation
- app.reads: Cache-first read path and warm-up
"""
