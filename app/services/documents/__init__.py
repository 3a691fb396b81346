"""Document ingestion services.

    from app.services.documents.registry import DocumentRegistry
    from app.services.documents.state import DocumentStatus
"""
