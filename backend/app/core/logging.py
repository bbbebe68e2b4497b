"""Logging configuration for the application"""
import logging
from typing import Any, Dict, Optional

from app.core.config import settings


def setup_logging():
    """Configure logging for the application"""
    LOG_LEVEL = settings.LOG_LEVEL.upper()
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    # Silence noisy third-party libraries
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# Export commonly used loggers
security_logger = logging.getLogger("security")
payment_logger = logging.getLogger("payments")
api_access_logger = logging.getLogger("api_access")


def log_payment_event(event: str, data: Dict[str, Any], user_id: Optional[int] = None) -> None:
    """Write a billing event to the payments logger

    Args:
        event: Event name (e.g., 'SUBSCRIPTION_UPDATED', 'PAYMENT_REFUNDED')
        data: Event details
        user_id: Owning user, when known
    """
    details = ", ".join(f"{key}={value}" for key, value in data.items())
    payment_logger.info(f"{event} - User: {user_id if user_id is not None else 'unknown'} - {details}")
