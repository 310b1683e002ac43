import logging
import os
import re
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import operator_config

logger = logging.getLogger(__name__)

# auto_error is off so a missing header answers 401 rather than 403
security = HTTPBearer(auto_error=False)


def get_admin_token() -> str:
    """Get admin token from environment or config"""
    token = os.getenv(operator_config.get("security.admin_token_env", "ADMIN_TOKEN"))
    if not token:
        token = operator_config.get("security.default_token")
        if not token:
            logger.warning("[security] No admin token configured, using fallback")
            token = "default-admin-token-change-me"
    return token


def redact_secrets(text: str) -> str:
    """Redact sensitive information from text"""
    if not text:
        return text

    text = re.sub(r"Bearer\s+[a-zA-Z0-9\-._~+/]+", "Bearer [REDACTED]", text)
    text = re.sub(r"sk-[a-zA-Z0-9\-_]{8,}", "[REDACTED]", text)
    text = re.sub(
        r'(api_key|apikey|token|password)["\']?\s*[:=]\s*["\']?[^"\s,]+["\']?',
        r"\1: [REDACTED]",
        text,
        flags=re.IGNORECASE,
    )
    return text


async def get_current_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """Validate Bearer token and return operator identifier"""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if credentials.credentials != get_admin_token():
        token_preview = (
            credentials.credentials[:8] + "..."
            if len(credentials.credentials) > 8
            else "[SHORT]"
        )
        logger.warning(f"[security] Invalid token attempt: {token_preview}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return operator_config.get("server.owner", "admin")


def get_cors_config() -> Dict[str, Any]:
    """Permissive CORS for the browser client; origins come from config"""
    return {
        "allow_origins": operator_config.get("security.cors.allow_origins", ["*"]),
        "allow_credentials": False,
        "allow_methods": operator_config.get(
            "security.cors.allow_methods", ["GET", "POST", "OPTIONS"]
        ),
        "allow_headers": operator_config.get("security.cors.allow_headers", ["*"]),
        "max_age": operator_config.get("security.cors.max_age", 86400),
    }


def log_security_status():
    """Log current security configuration status"""
    token_env = operator_config.get("security.admin_token_env", "ADMIN_TOKEN")
    admin_token_set = bool(os.getenv(token_env))
    logger.info(f"[security] CORS origins: {get_cors_config()['allow_origins']}")
    logger.info(f"[security] Admin token: {'Set' if admin_token_set else 'Using default'}")
    if not admin_token_set:
        logger.warning(
            "[security] WARNING: Using default admin token - change this in production"
        )
