"""Database clients and connections.

Imports are NOT eagerly loaded here, so importing one
backend (e.g. Postgres for the retry worker) never opens clients for the
others. Use explicit imports: ``from app.db.qdrant import VectorStore``, etc.
"""
