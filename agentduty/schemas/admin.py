from pydantic import BaseModel, ConfigDict, Field

from agentduty.db.models import CHANNEL_SLACK, CHANNEL_SMS


class UserCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    name: str | None = None
    phone: str | None = Field(default=None, max_length=32)
    slack_user_id: str | None = Field(default=None, max_length=32)
    timezone: str = "UTC"


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str | None
    phone: str | None
    slack_user_id: str | None


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(default="default", min_length=1, max_length=128)


class ApiKeyCreateResponse(BaseModel):
    id: str
    name: str
    key: str


class EscalationStepIn(BaseModel):
    channel: str = Field(pattern=f"^({CHANNEL_SLACK}|{CHANNEL_SMS})$")
    delay_seconds: int = Field(default=0, ge=0)


class EscalationPolicyCreateRequest(BaseModel):
    user_id: str
    name: str = Field(min_length=1, max_length=128)
    is_default: bool = False
    steps: list[EscalationStepIn] = Field(min_length=1)


class EscalationPolicyOut(BaseModel):
    id: str
    name: str
    is_default: bool
    steps: list[EscalationStepIn]


class PriorityRouteCreateRequest(BaseModel):
    user_id: str
    priority: int = Field(ge=1, le=5)
    policy_id: str


class MaintenanceRunRequest(BaseModel):
    dry_run: bool = True
    updated_by: str = "admin"
