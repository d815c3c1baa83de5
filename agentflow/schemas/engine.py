from typing import Optional

from pydantic import BaseModel, Field


class ClaimRequest(BaseModel):
    agent_id: str = Field(min_length=1)


class ClaimResponse(BaseModel):
    found: bool
    step_id: Optional[str] = None
    run_id: Optional[str] = None
    input: Optional[str] = None


class CompleteRequest(BaseModel):
    output: str = ""


class CompleteResponse(BaseModel):
    advanced: bool
    run_completed: bool


class FailRequest(BaseModel):
    error: str = ""


class FailResponse(BaseModel):
    retrying: bool
    run_failed: bool


class StartRunRequest(BaseModel):
    workflow_id: str = Field(min_length=1)
    task: str = Field(min_length=1)
    notify_target: Optional[str] = None
