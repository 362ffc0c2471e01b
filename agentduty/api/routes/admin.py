from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agentduty.core.security import verify_admin_key
from agentduty.db.models import EscalationPolicy, EscalationStep, PriorityRoute, User
from agentduty.db.session import get_db
from agentduty.schemas.admin import (
    ApiKeyCreateRequest,
    ApiKeyCreateResponse,
    EscalationPolicyCreateRequest,
    EscalationPolicyOut,
    EscalationStepIn,
    MaintenanceRunRequest,
    PriorityRouteCreateRequest,
    UserCreateRequest,
    UserOut,
)
from agentduty.services.account_link_service import AccountLinkService
from agentduty.services.retention_service import RetentionService
from agentduty.workflows.registry import get_workflow_engine

router = APIRouter(prefix="/v1/admin", tags=["admin"], dependencies=[Depends(verify_admin_key)])


def _user_or_404(db: Session, user_id: str) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.post("/users", response_model=UserOut, status_code=201)
def create_user(payload: UserCreateRequest, db: Session = Depends(get_db)) -> User:
    user = User(**payload.model_dump())
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail="User with this email already exists") from exc
    db.refresh(user)
    return user


@router.post("/users/{user_id}/api-keys", response_model=ApiKeyCreateResponse, status_code=201)
def create_api_key(user_id: str, payload: ApiKeyCreateRequest, db: Session = Depends(get_db)) -> ApiKeyCreateResponse:
    user = _user_or_404(db, user_id)
    api_key, raw_key = AccountLinkService(db).issue_api_key(user, payload.name)
    return ApiKeyCreateResponse(id=api_key.id, name=api_key.name, key=raw_key)


@router.post("/escalation-policies", response_model=EscalationPolicyOut, status_code=201)
def create_escalation_policy(
    payload: EscalationPolicyCreateRequest,
    db: Session = Depends(get_db),
) -> EscalationPolicyOut:
    _user_or_404(db, payload.user_id)
    if payload.is_default:
        for existing in db.scalars(
            select(EscalationPolicy).where(
                EscalationPolicy.user_id == payload.user_id,
                EscalationPolicy.is_default.is_(True),
            )
        ):
            existing.is_default = False

    policy = EscalationPolicy(user_id=payload.user_id, name=payload.name, is_default=payload.is_default)
    db.add(policy)
    db.flush()
    for order, step in enumerate(payload.steps):
        db.add(
            EscalationStep(
                policy_id=policy.id,
                step_order=order,
                channel=step.channel,
                delay_seconds=step.delay_seconds,
            )
        )
    db.commit()
    return EscalationPolicyOut(
        id=policy.id,
        name=policy.name,
        is_default=policy.is_default,
        steps=[EscalationStepIn(channel=step.channel, delay_seconds=step.delay_seconds) for step in payload.steps],
    )


@router.post("/priority-routes", status_code=201)
def upsert_priority_route(payload: PriorityRouteCreateRequest, db: Session = Depends(get_db)) -> dict:
    _user_or_404(db, payload.user_id)
    policy = db.get(EscalationPolicy, payload.policy_id)
    if policy is None or policy.user_id != payload.user_id:
        raise HTTPException(status_code=404, detail="Escalation policy not found")

    route = db.scalar(
        select(PriorityRoute).where(PriorityRoute.user_id == payload.user_id, PriorityRoute.priority == payload.priority)
    )
    if route is None:
        route = PriorityRoute(user_id=payload.user_id, priority=payload.priority, policy_id=payload.policy_id)
        db.add(route)
    else:
        route.policy_id = payload.policy_id
    db.commit()
    return {"status": "ok", "id": route.id, "priority": route.priority, "policy_id": route.policy_id}


@router.post("/workflows/run-due")
def run_due_workflows() -> dict:
    return {"status": "ok", "executed": get_workflow_engine().run_due()}


@router.post("/maintenance/run")
def run_maintenance(payload: MaintenanceRunRequest, db: Session = Depends(get_db)) -> dict:
    return RetentionService(db).run_cleanup(updated_by=payload.updated_by, dry_run=payload.dry_run)
