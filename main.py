#!/usr/bin/env python3
"""
IPTV Stream Gateway - Main Entry Point
Entitlement-gated live delivery, session control and transcoding for IPTV subscribers.
"""

import uvicorn
import logging
import sys
import os
import asyncio

# Add the src directory to Python path so local modules in `src/` can be imported
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

# Import configs AFTER setting up the path
from redis_config import get_redis_config, should_use_redis_registry
from config import settings, VERSION


async def _check_redis(redis_url: str) -> bool:
    import redis.asyncio as redis_async

    client = redis_async.from_url(redis_url, decode_responses=True)
    try:
        await client.ping()
        return True
    except Exception:
        return False
    finally:
        await client.aclose()


def main():
    """Main function to start the gateway server."""

    # Try to use uvloop for better async performance
    try:
        import uvloop
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        use_uvloop = True
    except ImportError:
        use_uvloop = False

    # Configure logging
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger = logging.getLogger(__name__)
    logger.info("="*60)
    logger.info(
        f"⚡️ Starting {settings.SERVICE_NAME} v{VERSION} on {settings.HOST}:{settings.PORT}")
    logger.info("="*60)
    logger.info(f"ℹ️  Log level set to: {settings.LOG_LEVEL}")
    if use_uvloop:
        logger.info("✅ Using uvloop for optimized async I/O performance")
    else:
        logger.info(
            "✅ Using standard asyncio (install uvloop for better performance)")

    logger.info(f"✅ Database: {settings.DATABASE_URL.split('://')[0]}")
    logger.info(f"✅ Transcoding via {settings.FFMPEG_PATH}")
    if not settings.SERVER_MASTER_KEY:
        logger.warning("⚠️  SERVER_MASTER_KEY not set; remote execution credentials are unavailable")

    if settings.RELOAD:
        logger.info("🔄 Auto-reload is enabled.")

    # With the durable registry enabled, check Redis connectivity up front
    if should_use_redis_registry():
        redis_url = get_redis_config()['redis_url']
        try:
            if asyncio.run(_check_redis(redis_url)):
                logger.info("✅ Redis available for the process registry")
            else:
                logger.warning(
                    f"❌  Redis configured but ping failed for: {redis_url}")
        except Exception as e:
            logger.warning(f"❌ Redis check failed: {e}")

    # Start the server using settings from the config object
    uvicorn.run(
        "api:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
        loop="uvloop" if use_uvloop and not settings.RELOAD else "asyncio"
    )


if __name__ == "__main__":
    main()
