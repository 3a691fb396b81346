"""Chat request/response correlation.

Imports are not eagerly loaded here so the queue transport (aio-pika) is
only imported where it is used. Use explicit imports:
    from app.services.chat.service import ChatService
    from app.services.chat.push import InMemoryPushChannel, RedisPushChannel
"""
