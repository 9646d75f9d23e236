from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from ..container import ServiceContainer
from ..models.admin import AdminSession
from ..models.api_models import (
    AdminRefreshRequest,
    GenerateAdminTokenRequest,
    SpendCreditsRequest,
)
from ..models.auth import AuthHints


router = APIRouter(prefix="/api")


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


async def require_admin(
    request: Request,
    token: Optional[str] = Query(default=None),
    container: ServiceContainer = Depends(get_container),
) -> AdminSession:
    if not token:
        header = request.headers.get("Authorization", "")
        if header.startswith("Bearer "):
            token = header[len("Bearer "):].strip()
    return await container.admin_tokens.validate(token)


def _pagination(limit: int, offset: int, count: int) -> Dict[str, int]:
    return {"limit": limit, "offset": offset, "count": count}


@router.get("/config", tags=["config"])
async def client_config(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    config = container.settings
    return {
        "disableEmailOnlyAuth": config.DISABLE_EMAIL_ONLY_AUTH,
        "communityDomain": config.COMMUNITY_DOMAIN or None,
    }


@router.post("/auth", tags=["auth"])
async def authenticate(
    payload: AuthHints, container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    member = await container.auth.authenticate(payload)
    return {
        "success": True,
        "member": member.model_dump(
            mode="json", exclude={"access_token", "refresh_token", "expires_at"}
        ),
        "access_token": member.access_token,
        "refresh_token": member.refresh_token,
        "expires_at": member.expires_at,
    }


@router.get("/credits/{circle_member_id}", tags=["credits"])
async def get_credits(
    circle_member_id: str, container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    balance = await container.credits.get_balance(circle_member_id)
    return {"success": True, "credits": balance.model_dump(mode="json")}


@router.post("/credits/spend", tags=["credits"])
async def spend_credits(
    payload: SpendCreditsRequest, container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    result = await container.metering.spend(
        payload.circle_member_id,
        payload.action_type,
        cost=payload.credits_cost,
        metadata=payload.metadata,
    )
    return {"success": True, **result.model_dump(mode="json")}


@router.get("/credits/{circle_member_id}/history", tags=["credits"])
async def credit_history(
    circle_member_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    page = await container.credits.get_credit_history(circle_member_id, limit=limit, offset=offset)
    return {
        "success": True,
        "history": [entry.model_dump(mode="json") for entry in page.items],
        "pagination": _pagination(limit, offset, len(page.items)),
    }


@router.get("/actions/{circle_member_id}", tags=["credits"])
async def action_history(
    circle_member_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    action_type: Optional[str] = None,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    page = await container.credits.get_actions(
        circle_member_id, limit=limit, offset=offset, action_type=action_type
    )
    return {
        "success": True,
        "actions": [action.model_dump(mode="json") for action in page.items],
        "pagination": _pagination(limit, offset, len(page.items)),
    }


@router.post("/admin/generate-token", tags=["admin"])
async def generate_admin_token(
    payload: GenerateAdminTokenRequest, container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    issued = await container.admin_tokens.generate_token(payload.circle_member_id)
    return {
        "success": True,
        "token": issued.token,
        "expiresAt": issued.expires_at.isoformat(),
        "adminUrl": f"/admin.html?token={issued.token}",
    }


@router.get("/admin/members", tags=["admin"])
async def admin_members(
    _: AdminSession = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    members = await container.directory.list_members()
    balances = {b.external_member_id: b.balance for b in await container.credits.list_balances()}
    return {
        "success": True,
        "members": [
            {
                **m.model_dump(
                    mode="json",
                    include={
                        "external_member_id", "name", "email", "is_admin",
                        "is_moderator", "is_paid", "first_seen_at", "last_seen_at",
                    },
                ),
                "credits_balance": balances.get(m.external_member_id, 0),
            }
            for m in members
        ],
    }


@router.get("/admin/credits", tags=["admin"])
async def admin_credits(
    _: AdminSession = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    balances = await container.credits.list_balances()
    return {"success": True, "credits": [b.model_dump(mode="json") for b in balances]}


@router.get("/admin/actions", tags=["admin"])
async def admin_actions(
    limit: int = Query(default=100, ge=1, le=1000),
    _: AdminSession = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    actions = await container.credits.recent_actions(limit=limit)
    return {"success": True, "actions": [a.model_dump(mode="json") for a in actions]}


@router.get("/admin/credit-history", tags=["admin"])
async def admin_credit_history(
    limit: int = Query(default=100, ge=1, le=1000),
    _: AdminSession = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    history = await container.credits.recent_history(limit=limit)
    return {"success": True, "history": [h.model_dump(mode="json") for h in history]}


@router.get("/admin/stats", tags=["admin"])
async def admin_stats(
    _: AdminSession = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    stats = await container.credits.stats()
    return {"success": True, "stats": stats.model_dump()}


@router.post("/admin/refresh-credits/{circle_member_id}", tags=["admin"])
async def admin_refresh_credits(
    circle_member_id: str,
    payload: AdminRefreshRequest,
    admin: AdminSession = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    member = await container.directory.require(circle_member_id)
    result = await container.credits.admin_adjust(
        member,
        bonus_amount=payload.bonus_credits,
        force_refresh=payload.force_refresh,
        admin_email=admin.email,
    )
    return {
        "success": True,
        "member": {
            "circle_member_id": circle_member_id,
            "email": member.email,
            "name": member.name,
            "is_paid": member.is_paid,
        },
        "credits": {
            "previous_balance": result.previous_balance,
            "credits_added": result.credits_added,
            "current_balance": result.current_balance,
        },
        "operations": result.operations,
        "admin_user": admin.email,
    }
