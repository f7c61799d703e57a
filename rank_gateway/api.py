import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from fastapi import APIRouter, Depends, Query, Request, Security
from fastapi.security import APIKeyHeader, APIKeyQuery
from pydantic import BaseModel

from rank_gateway.access import CredentialClassifier, Tier, client_ip
from rank_gateway.audit import AuditDispatcher
from rank_gateway.config import Settings
from rank_gateway.errors import Forbidden, MissingParameter, NotFound, Unauthorized
from rank_gateway.limiter import ActionRateLimiter
from rank_gateway.ranking import GroupClient, RankAction, RankChangeOrchestrator, UserInfo
from rank_gateway.request_limit import request_limit
from rank_gateway.store import IPApprovalStore


@dataclass
class Gateway:
    settings: Settings
    client: GroupClient
    store: IPApprovalStore
    limiter: ActionRateLimiter
    classifier: CredentialClassifier
    orchestrator: RankChangeOrchestrator
    audit: AuditDispatcher
    restart: Callable[[float], None]


class AuthPayload(BaseModel): key: Optional[str] = None
class IPPayload(BaseModel): ip: Optional[str] = None

class RankChangePayload(BaseModel):
    userid: Optional[Union[int, str]] = None
    trainerid: Optional[Union[int, str]] = None
    rank: Optional[Union[int, str]] = None


authorization_header = APIKeyHeader(name="Authorization", auto_error=False, description="Bearer token for maintainer, secondary or spectator keys.")
api_key_query = APIKeyQuery(name="key", auto_error=False, description="Machine API key (in URL).")
api_key_header = APIKeyHeader(name="x-api-key", auto_error=False, description="Machine API key (in request header).")

router = APIRouter(prefix="/api")


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def caller_ip(request: Request) -> str:
    return client_ip(request, get_gateway(request).settings.trust_proxy)


async def get_tier(request: Request, authorization: Optional[str] = Security(authorization_header),
                   key_from_query: Optional[str] = Security(api_key_query),
                   key_from_header: Optional[str] = Security(api_key_header)) -> Tier:
    return get_gateway(request).classifier.classify(authorization, key_from_query or key_from_header, caller_ip(request))


def require_tier(*allowed: Tier):
    async def dependency(tier: Tier = Depends(get_tier)) -> Tier:
        if tier not in allowed:
            raise Forbidden("insufficient_tier", f"The {tier.value} tier cannot use this endpoint.")
        return tier
    return dependency


maintainer_only = require_tier(Tier.MAINTAINER)


@router.get("/status", tags=["Status"])
@request_limit
async def status(request: Request):
    return {"online": True, "message": "API is online", "time": datetime.now(timezone.utc).isoformat()}


@router.post("/auth", tags=["Status"])
@request_limit
async def authenticate(request: Request, payload: AuthPayload):
    """Reports which tier a key grants. A secondary key from a new IP queues it for approval."""
    if not payload.key: raise Unauthorized("missing_key", "No key provided.")
    tier = get_gateway(request).classifier.classify_key(payload.key, caller_ip(request))
    return {"success": True, "type": tier.value}


@router.get("/roles", tags=["Information"])
@request_limit
async def roles(request: Request, _: Tier = Depends(get_tier)):
    return await get_gateway(request).orchestrator.list_roles()


@router.get("/userinfo", response_model=UserInfo, tags=["Information"])
@request_limit
async def userinfo(request: Request, userid: Optional[str] = Query(None, description="The user's ID or username."), _: Tier = Depends(get_tier)):
    return await get_gateway(request).orchestrator.user_info(userid)


@router.get("/pending-approvals", tags=["Approvals"])
@request_limit
async def pending_approvals(request: Request, _: Tier = Depends(maintainer_only)):
    records = get_gateway(request).store.list_pending()
    return {"pending": [r.model_dump(mode="json") for r in records]}


@router.post("/pending-approvals/approve", tags=["Approvals"])
@request_limit
async def approve_ip(request: Request, payload: IPPayload, _: Tier = Depends(maintainer_only)):
    if not payload.ip: raise MissingParameter("ip_required", "An IP address is required.")
    gateway = get_gateway(request)
    if not gateway.store.approve(payload.ip):
        raise NotFound("pending_not_found", f"No pending approval for {payload.ip}.")
    gateway.audit.emit(f"Secondary access approved for {payload.ip}.")
    return {"success": True, "ip": payload.ip}


@router.post("/pending-approvals/reject", tags=["Approvals"])
@request_limit
async def reject_ip(request: Request, payload: IPPayload, _: Tier = Depends(maintainer_only)):
    if not payload.ip: raise MissingParameter("ip_required", "An IP address is required.")
    gateway = get_gateway(request)
    removed = gateway.store.reject(payload.ip)
    if removed: gateway.audit.emit(f"Secondary access request from {payload.ip} rejected.")
    return {"success": True, "ip": payload.ip, "removed": removed}


@router.post("/restart", tags=["Status"])
@request_limit
async def restart(request: Request, _: Tier = Depends(maintainer_only)):
    gateway = get_gateway(request)
    logging.info("Restart requested by maintainer.")
    gateway.restart(gateway.settings.restart_delay_seconds)
    return {"message": "Restarting service..."}


# Declared last: "/{action}" would otherwise shadow the single-segment routes above.
@router.post("/{action}", tags=["Ranking"])
@request_limit
async def change_rank_post(request: Request, action: RankAction, payload: Optional[RankChangePayload] = None,
                           tier: Tier = Depends(require_tier(Tier.MAINTAINER, Tier.SECONDARY, Tier.SPECTATOR))):
    payload = payload or RankChangePayload()
    result = await get_gateway(request).orchestrator.change_rank(
        tier, action, payload.userid, payload.trainerid, payload.rank, caller_ip=caller_ip(request))
    return result.model_dump(mode="json")


@router.get("/{action}", tags=["Ranking"])
@request_limit
async def change_rank_get(request: Request, action: RankAction, userid: Optional[str] = Query(None),
                          trainerid: Optional[str] = Query(None), rank: Optional[str] = Query(None),
                          tier: Tier = Depends(require_tier(Tier.EXTERNAL_API))):
    result = await get_gateway(request).orchestrator.change_rank(
        tier, action, userid, trainerid, rank, caller_ip=caller_ip(request))
    return result.model_dump(mode="json")
