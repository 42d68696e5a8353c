"""Base interface for outbound task submission."""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class BaseTaskSubmitter(ABC):
    """Submits a prompt for asynchronous evaluation on one channel.

    Submission is fire-and-forget: the result arrives later through the
    completion webhook, carrying ``idempotency_key`` as the task id.
    """

    @abstractmethod
    async def submit(self, prompt_text: str, locale: str, channel: str, idempotency_key: str) -> None:
        """Raise TaskSubmissionError if the provider did not accept the task."""
        ...
