from pydantic import BaseModel, Field


class SchedulerIntervalRequest(BaseModel):
    interval_seconds: float = Field(..., gt=0)
