from typing import Any

from pydantic import BaseModel, Field

SUCCESS_STATUSES = frozenset({"COMPLETED", "SUCCESS", "SUCCEEDED"})


class CompletionTaskRef(BaseModel):
    model_config = {"populate_by_name": True, "extra": "allow"}

    id: str = Field(min_length=1, max_length=64)
    status: str = Field(min_length=1, max_length=32)
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey", max_length=64)


class CompletionEvent(BaseModel):
    """Inbound provider callback: ``{"task": {...}, "response": {...}}``."""

    model_config = {"extra": "allow"}

    task: CompletionTaskRef
    response: dict[str, Any]

    @property
    def task_id(self) -> str:
        """Our Task id: the idempotency key we submitted with, else the provider's task id."""
        return self.task.idempotency_key or self.task.id

    @property
    def is_success(self) -> bool:
        return self.task.status.strip().upper() in SUCCESS_STATUSES


class CompletionAck(BaseModel):
    task_id: str
    outcome: str
    scheduled: list[str] = Field(default_factory=list)
