"""
Configuration for the Redis-backed process registry.
"""

import os
import socket
from config import settings


def get_redis_config() -> dict:
    """Get Redis configuration"""
    # Build Redis URL from components or use explicit URL if provided
    # Format: redis://[:password@]host:port/db
    if settings.REDIS_PASSWORD:
        redis_url = os.getenv(
            "REDIS_URL", f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_SERVER_PORT}/{settings.REDIS_DB}")
    else:
        redis_url = os.getenv(
            "REDIS_URL", f"redis://{settings.REDIS_HOST}:{settings.REDIS_SERVER_PORT}/{settings.REDIS_DB}")

    return {
        "host": settings.REDIS_HOST,
        "port": settings.REDIS_SERVER_PORT,
        "password": settings.REDIS_PASSWORD,
        "db": settings.REDIS_DB,
        "redis_url": redis_url,
        "enabled": settings.REDIS_ENABLED,
        "worker_id": get_worker_id(),
    }


def get_worker_id() -> str:
    """Identity of this instance in the shared registry"""
    return settings.WORKER_ID or f"{socket.gethostname()}-{os.getpid()}"


def should_use_redis_registry() -> bool:
    """Check if the durable Redis process registry should be used"""
    return settings.REDIS_ENABLED
