import asyncio
import logging
from enum import Enum
from typing import List, Optional, Protocol, Union

from pydantic import BaseModel

from rank_gateway.access import Tier
from rank_gateway.audit import AuditDispatcher
from rank_gateway.errors import Forbidden, InvalidTransition, MissingParameter
from rank_gateway.limiter import ActionRateLimiter
from rank_gateway.store import IPApprovalStore

HUMAN_TIERS = (Tier.MAINTAINER, Tier.SECONDARY)


class RankAction(str, Enum):
    PROMOTE = "promote"
    DEMOTE = "demote"
    SETRANK = "setrank"

    @property
    def past_tense(self) -> str:
        return {"promote": "promoted", "demote": "demoted", "setrank": "ranked"}[self.value]


class GroupClient(Protocol):
    async def get_authenticated_user(self) -> dict: ...
    async def get_roles(self, group_id: int) -> List[dict]: ...
    async def get_role_in_group(self, group_id: int, user_id: int) -> dict: ...
    async def set_rank(self, group_id: int, user_id: int, role_id: int): ...
    async def get_id_from_username(self, username: str) -> int: ...
    async def get_username_from_id(self, user_id: int) -> str: ...
    async def get_thumbnail(self, user_id: int, size: str = "150x150") -> Optional[str]: ...


class RankChangeResult(BaseModel):
    success: bool = True
    action: RankAction
    user_id: int
    username: str
    previous_rank: int
    new_rank: int
    role_name: str
    changed: bool
    message: str


class UserInfo(BaseModel):
    userId: int
    username: str
    rank: str
    headshotUrl: Optional[str] = None


def next_rank(ranks: List[int], current: int, action: RankAction, explicit: Optional[int] = None) -> int:
    if action is RankAction.SETRANK:
        if explicit is None: raise MissingParameter("rank_required", "Rank required.")
        return explicit
    if action is RankAction.PROMOTE:
        target = next((r for r in sorted(ranks) if r > current), None)
        if target is None: raise InvalidTransition("already_highest_rank", "User is already at the highest rank.")
        return target
    target = next((r for r in sorted(ranks, reverse=True) if r < current), None)
    if target is None: raise InvalidTransition("already_lowest_rank", "User is already at the lowest rank.")
    return target


def _parse_rank(rank: Union[int, str, None]) -> Optional[int]:
    if rank is None or rank == "": return None
    try:
        return int(rank)
    except (TypeError, ValueError):
        raise InvalidTransition("invalid_rank", f"Rank must be a number, got '{rank}'.")


class RankChangeOrchestrator:
    def __init__(self, client: GroupClient, group_id: int, store: IPApprovalStore,
                 limiter: ActionRateLimiter, audit: Optional[AuditDispatcher] = None):
        self.client = client
        self.group_id = group_id
        self.store = store
        self.limiter = limiter
        self.audit = audit or AuditDispatcher()

    async def resolve_user_id(self, identifier: Union[int, str]) -> int:
        if isinstance(identifier, int): return identifier
        identifier = identifier.strip()
        if identifier.isdigit(): return int(identifier)
        return await self.client.get_id_from_username(identifier)

    def _throttle(self, ip: Optional[str]):
        if ip is None: return
        count = self.limiter.record_action(ip)
        if self.limiter.exceeded(count):
            self.store.block(ip)
            self.audit.emit(f"IP {ip} blocked after {count} rank actions within {int(self.limiter.window)}s.")
            raise Forbidden("rate_limited", "Too many actions. This IP address has been blocked.")

    async def change_rank(self, tier: Tier, action: RankAction, target: Union[int, str, None], trainer: Union[int, str, None],
                          rank: Union[int, str, None] = None, caller_ip: Optional[str] = None) -> RankChangeResult:
        if not tier.can_mutate:
            raise Forbidden("read_only_tier", "Spectators cannot change ranks.")
        if target in (None, "") or trainer in (None, ""):
            raise MissingParameter("missing_parameters", "Missing parameters: userid and trainerid are required.")
        explicit = None
        if action is RankAction.SETRANK:
            explicit = _parse_rank(rank)
            if explicit is None: raise MissingParameter("rank_required", "Rank required.")

        if tier in HUMAN_TIERS:
            self._throttle(caller_ip)

        user_id = await self.resolve_user_id(target)
        roles = await self.client.get_roles(self.group_id)
        current_role = await self.client.get_role_in_group(self.group_id, user_id)
        current = current_role.get("rank", 0)

        new_rank = next_rank([r["rank"] for r in roles], current, action, explicit)
        role = next((r for r in roles if r["rank"] == new_rank), None)
        if role is None:
            raise InvalidTransition("unknown_rank", f"No role with rank {new_rank} exists in group {self.group_id}.")
        # All lookups finish before set_rank, so a successful change is always audited.
        username = await self.client.get_username_from_id(user_id)

        changed = new_rank != current
        if changed:
            await self.client.set_rank(self.group_id, user_id, role["id"])
            message = f"User {username} {action.past_tense} to {role['name']} (Rank {new_rank})"
            logging.info(f"{message} by trainer {trainer} [{tier.value}].")
            self.audit.emit(f"{message} by trainer {trainer} via {tier.value}.")
        else:
            message = f"User {username} is already {role['name']} (Rank {new_rank})"

        return RankChangeResult(action=action, user_id=user_id, username=username, previous_rank=current,
                                new_rank=new_rank, role_name=role["name"], changed=changed, message=message)

    async def list_roles(self) -> List[dict]:
        roles = await self.client.get_roles(self.group_id)
        return [{"rank": r["rank"], "name": r["name"]} for r in roles]

    async def user_info(self, identifier: Union[int, str, None]) -> UserInfo:
        if identifier in (None, ""):
            raise MissingParameter("missing_parameters", "No user ID or username provided.")
        user_id = await self.resolve_user_id(identifier)
        username, thumbnail, role = await asyncio.gather(
            self.client.get_username_from_id(user_id),
            self.client.get_thumbnail(user_id),
            self.client.get_role_in_group(self.group_id, user_id),
        )
        return UserInfo(userId=user_id, username=username, rank=role.get("name", "Guest"), headshotUrl=thumbnail)
