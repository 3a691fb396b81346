"""Outbound webhook delivery, retry queue and inbound traffic capture.

Use explicit imports:
    from app.services.webhooks.dispatcher import WebhookDispatcher
    from app.services.webhooks.retry import RetryQueue
"""
