"""Monitoring provider client (one HTTP endpoint per answer channel)."""

import logging

import httpx

from app.collectors.base import BaseTaskSubmitter
from app.core.config import settings
from app.core.exceptions import TaskSubmissionError
from app.models.task import Channel

logger = logging.getLogger(__name__)

# Channel -> provider endpoint suffix
CHANNEL_ENDPOINTS = {
    Channel.CHATGPT.value: "chatgpt",
    Channel.PERPLEXITY.value: "perplexity",
    Channel.COPILOT.value: "copilot",
    Channel.GEMINI.value: "gemini",
    Channel.GOOGLE_AI_MODE.value: "aimode",
    Channel.GOOGLE_AI_OVERVIEW.value: "aioverview",
}


class MonitoringTaskProvider(BaseTaskSubmitter):
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        webhook_url: str | None = None,
        timeout: float | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.task_provider_api_key
        self.base_url = (base_url or settings.task_provider_url).rstrip("/")
        self.webhook_url = webhook_url if webhook_url is not None else settings.task_webhook_url
        self.timeout = timeout or settings.task_provider_timeout_seconds

    def endpoint_for(self, channel: str) -> str:
        suffix = CHANNEL_ENDPOINTS.get(channel)
        if suffix is None:
            raise TaskSubmissionError(f"No provider endpoint for channel {channel!r}")
        return f"{self.base_url}/{suffix}"

    async def submit(self, prompt_text: str, locale: str, channel: str, idempotency_key: str) -> None:
        if not self.api_key:
            raise TaskSubmissionError("TASK_PROVIDER_API_KEY is not configured")

        payload = {
            "prompt": prompt_text,
            "country": locale,
            "idempotencyKey": idempotency_key,
        }
        if self.webhook_url:
            payload["webhook"] = {"url": self.webhook_url}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    self.endpoint_for(channel),
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                )
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TaskSubmissionError(
                f"Provider rejected task for {channel} with status {e.response.status_code}: {e.response.text[:300]}"
            ) from e
        except httpx.HTTPError as e:
            raise TaskSubmissionError(f"Provider request failed for {channel}: {type(e).__name__}: {e}") from e

        logger.info("Submitted task %s on %s", idempotency_key, channel, extra={"task_id": idempotency_key})
