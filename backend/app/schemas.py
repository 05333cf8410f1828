from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from .models import NodeType, SubStepStatus


class AccountBase(BaseModel):
    username: str
    platform: str
    is_autonomous: bool = False
    daily_spend_limit: Decimal | None = Field(default=None, ge=0)
    approval_threshold: Decimal | None = Field(default=None, ge=0)
    daily_post_limit: int | None = Field(default=None, ge=0)
    preferred_post_times: str | None = None

    @field_validator("username")
    @classmethod
    def normalize_username(cls, value: str) -> str:
        return value.strip().removeprefix("@")

    @field_validator("platform")
    @classmethod
    def normalize_platform(cls, value: str) -> str:
        return value.strip().lower()


class AccountCreate(AccountBase):
    pass


class AccountRead(AccountBase):
    id: int
    created_at: datetime

    class Config:
        from_attributes = True


class AccountUpdate(BaseModel):
    username: str | None = None
    platform: str | None = None
    is_autonomous: bool | None = None
    daily_spend_limit: Decimal | None = Field(default=None, ge=0)
    approval_threshold: Decimal | None = Field(default=None, ge=0)
    daily_post_limit: int | None = Field(default=None, ge=0)
    preferred_post_times: str | None = None


class NodeCreate(BaseModel):
    name: str
    node_type: NodeType = NodeType.server
    location: str

    @field_validator("location")
    @classmethod
    def normalize_location(cls, value: str) -> str:
        return value.strip()


class NodeUpdate(BaseModel):
    name: str | None = None
    node_type: NodeType | None = None
    location: str | None = None


class NodeRead(BaseModel):
    id: int
    name: str
    node_type: str
    location: str
    last_heartbeat: datetime | None = None
    online: bool = False
    active_claims: int = 0
    created_at: datetime

    class Config:
        from_attributes = True


class HeartbeatRequest(BaseModel):
    timestamp: datetime | None = None


class TaskCreate(BaseModel):
    prompt: str = Field(min_length=1)
    account_ids: list[int] = Field(min_length=1)
    scheduled_for: datetime | None = None
    target_node_location: str | None = None
    expiry_hours: float | None = Field(default=None, gt=0)
    estimated_cost: Decimal | None = Field(default=None, ge=0)
    ab_test_group: str | None = None


class TaskUpdate(BaseModel):
    prompt: str | None = Field(default=None, min_length=1)
    account_id: int | None = None
    scheduled_for: datetime | None = None
    target_node_location: str | None = None
    expiry_hours: float | None = Field(default=None, gt=0)
    estimated_cost: Decimal | None = Field(default=None, ge=0)
    ab_test_group: str | None = None

    @field_validator("prompt", "account_id")
    @classmethod
    def not_null(cls, value):
        # Omit the field to leave it unchanged; null would clear a required column
        if value is None:
            raise ValueError("may not be null")
        return value


class TaskRead(BaseModel):
    id: int
    account_id: int
    prompt: str
    status: str
    scheduled_for: datetime | None = None
    target_node_location: str | None = None
    original_target_node_location: str | None = None
    expires_at: datetime | None = None
    expiry_hours: float | None = None
    estimated_cost: Decimal | None = None
    approval_reason: str | None = None
    variant_of_task_id: int | None = None
    ab_test_group: str | None = None
    claimed_by_node_id: int | None = None
    claimed_at: datetime | None = None
    claim_count: int = 0
    reassign_count: int = 0
    reclaim_count: int = 0
    video_url: str | None = None
    published_at: datetime | None = None
    takedown_status: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class DecisionRequest(BaseModel):
    reason: str | None = None


class RepostRequest(BaseModel):
    account_ids: list[int] = Field(min_length=1)
    ab_test_group: str | None = None


class SubStepRead(BaseModel):
    id: int
    task_id: int
    step_name: str
    status: str
    phase: str
    attempt: int
    details: dict | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime

    class Config:
        from_attributes = True


class SubStepReport(BaseModel):
    step_name: str = Field(min_length=1)
    status: SubStepStatus
    details: dict | None = None


class PublishReport(BaseModel):
    video_url: str = Field(min_length=1)
    published_at: datetime | None = None


class FailureReport(BaseModel):
    error: str = Field(min_length=1)


class TakedownReport(BaseModel):
    success: bool
    error: str | None = None


class TaskEventRead(BaseModel):
    id: int
    task_id: int
    from_status: str | None = None
    to_status: str
    actor: str
    reason: str | None = None
    payload_json: dict | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class ActiveTaskRead(TaskRead):
    sub_steps: list[SubStepRead] = []
