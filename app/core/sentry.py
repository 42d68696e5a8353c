"""Optional Sentry reporting for the API and the Celery worker.

Enabled only when SENTRY_DSN is set.
"""

import logging

from app.core.config import settings
from app.core.logging import CONTEXT_FIELDS

logger = logging.getLogger(__name__)


def _tag_pipeline_context(event: dict, hint: dict) -> dict:
    # Promote correlation ids from log records to searchable tags
    record = hint.get("log_record") if hint else None
    if record is not None:
        tags = event.setdefault("tags", {})
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                tags[field] = str(value)
    return event


def init_sentry(service: str = "api") -> bool:
    """Initialize the SDK; returns False when reporting is disabled."""
    if not settings.sentry_dsn:
        logger.debug("SENTRY_DSN empty, error reporting disabled for %s", service)
        return False

    import sentry_sdk
    from sentry_sdk.integrations.celery import CeleryIntegration
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    integrations = [SqlalchemyIntegration()]
    if service == "worker":
        integrations.append(CeleryIntegration())
    else:
        integrations.append(FastApiIntegration(transaction_style="endpoint"))

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        server_name=f"llm-visibility-{service}",
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        before_send=_tag_pipeline_context,
        integrations=integrations,
    )
    logger.info("Sentry enabled (service=%s env=%s)", service, settings.app_env)
    return True
