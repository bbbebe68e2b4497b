"""Authentication dependencies and API access logging

Sessions are issued by the auth service; this backend only resolves the
``session_id`` cookie through Redis.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import redis
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.db.redis import get_session
from app.db.session import get_db
from app.models.user import User

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id"""
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    try:
        user_id = get_session(session_id)
    except redis.RedisError as e:
        security_logger.error(f"Session lookup failed: {e}")
        raise HTTPException(503, "Authentication temporarily unavailable")
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")

    return user_id


def require_active_subscription(
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
) -> int:
    """Dependency: Require an active subscription (from the user's cached status)"""
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(401, "User account no longer exists")
    if not user.has_active_subscription():
        security_logger.info(f"Subscription required - User: {user_id}, Status: {user.subscription_details()['status']}")
        raise HTTPException(403, {
            "success": False,
            "message": "Abonnement actif requis",
            "code": "SUBSCRIPTION_REQUIRED",
        })
    return user_id


def log_api_access(
    request: Request,
    status_code: int = 200,
    error: Optional[str] = None,
    extra: Optional[dict] = None
):
    """Log detailed API access information"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    session_id = request.cookies.get("session_id")
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "session_id": session_id[:16] + "..." if session_id else None,
        "client_ip": client_ip,
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "status_code": status_code,
        "error": error
    }
    if extra:
        log_data.update(extra)

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
