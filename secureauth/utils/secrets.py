"""
Secrets resolution for SecureAuth.

Supports multiple secret sources:
1. {NAME}_FILE pointing at a file (Docker/Kubernetes secrets)
2. {NAME} environment variable (development)
3. /run/secrets/{name} (Docker secrets default path)

Usage:
    from secureauth.utils.secrets import get_secret

    smtp_password = get_secret("MAIL_PASSWORD")
"""
import os
import logging
from typing import Optional
from functools import lru_cache

logger = logging.getLogger(__name__)


def _read_secret_file(path: str, name: str) -> Optional[str]:
    try:
        with open(path, 'r') as f:
            return f.read().strip()
    except OSError as e:
        logger.warning(f"Failed to read secret file for {name}: {e}")
        return None


@lru_cache(maxsize=32)
def get_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Resolve a secret value.

    Args:
        name: Secret name (e.g., "POSTGRES_PASSWORD").
        default: Value returned when no source has the secret.

    Returns:
        Secret value or default.
    """
    file_path = os.environ.get(f"{name}_FILE")
    if file_path and os.path.isfile(file_path):
        secret = _read_secret_file(file_path, name)
        if secret is not None:
            logger.debug(f"Loaded secret {name} from file")
            return secret

    env_value = os.environ.get(name)
    if env_value:
        return env_value

    docker_secret_path = f"/run/secrets/{name.lower()}"
    if os.path.isfile(docker_secret_path):
        secret = _read_secret_file(docker_secret_path, name)
        if secret is not None:
            logger.debug(f"Loaded secret {name} from Docker secrets")
            return secret

    return default


def get_required_secret(name: str) -> str:
    """
    Resolve a secret that must exist.

    Raises:
        ValueError: If no source provides the secret.
    """
    value = get_secret(name)
    if value is None:
        raise ValueError(
            f"Required secret '{name}' not found. "
            f"Set {name} or {name}_FILE environment variable."
        )
    return value


def mask_secret(secret: Optional[str], visible_chars: int = 4) -> str:
    """Mask a secret for logging, e.g. "abcd...wxyz"."""
    if not secret or len(secret) <= visible_chars * 2:
        return "***"
    return f"{secret[:visible_chars]}...{secret[-visible_chars:]}"
