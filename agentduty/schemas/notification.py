from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator


class NotificationCreateRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    priority: int | None = Field(default=None, ge=1, le=5)
    options: list[str] = Field(default_factory=list, max_length=10)
    tags: list[str] = Field(default_factory=list)
    context: dict | None = None
    session_key: str | None = Field(default=None, max_length=256)
    workspace: str | None = Field(default=None, max_length=512)


class RespondRequest(BaseModel):
    text: str | None = Field(default=None, min_length=1)
    selected_option: str | None = None

    @model_validator(mode="after")
    def require_answer(self) -> "RespondRequest":
        if self.text is None and self.selected_option is None:
            raise ValueError("Provide text or selected_option")
        return self


class SnoozeRequest(BaseModel):
    minutes: int = Field(gt=0, le=7 * 24 * 60)


class ResponseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    channel: str
    text: str | None
    selected_option: str | None
    responder_id: str
    created_at: datetime


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    short_code: str
    message: str
    priority: int
    status: str
    tags: list[str]
    options: list[str]
    context: dict | None
    session_id: str | None
    policy_id: str | None
    current_escalation_step: int
    snoozed_until: datetime | None
    created_at: datetime
    updated_at: datetime


class NotificationDetail(NotificationOut):
    responses: list[ResponseOut] = Field(default_factory=list)


class ArchiveAllResponse(BaseModel):
    archived: int


class SlackLinkCodeResponse(BaseModel):
    code: str
    expires_at: datetime
