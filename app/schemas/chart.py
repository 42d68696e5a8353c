from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel

TimeRange = Literal["7d", "30d", "90d"]
ChartTab = Literal["competitors", "domain", "url"]


class ChartResponse(BaseModel):
    time_range: TimeRange
    tab: ChartTab
    data: list[dict[str, Any]]
    config: dict[str, Any]
    updated_at: datetime
    cached: bool
