import secrets

from fastapi import Header

from app.core.config import settings
from app.core.exceptions import UnauthorizedError


def verify_bearer_secret(authorization: str | None, expected: str) -> bool:
    """Constant-time comparison of an ``Authorization: Bearer <secret>`` header."""
    if not authorization or not expected:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return secrets.compare_digest(token.strip().encode(), expected.encode())


async def require_cron_secret(
    authorization: str | None = Header(None, description="Bearer <CRON_SECRET>"),
) -> None:
    """FastAPI dependency guarding the batch/cron triggers."""
    if not verify_bearer_secret(authorization, settings.cron_secret):
        raise UnauthorizedError("Invalid cron secret")
