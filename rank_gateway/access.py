import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from starlette.requests import Request

from rank_gateway.errors import Forbidden, Unauthorized
from rank_gateway.store import IPApprovalStore


class Tier(str, Enum):
    MAINTAINER = "maintainer"
    SECONDARY = "secondary"
    SPECTATOR = "spectator"
    EXTERNAL_API = "external_api"

    @property
    def can_mutate(self) -> bool:
        return self is not Tier.SPECTATOR


@dataclass
class Credentials:
    bearer: Optional[str]
    query_key: Optional[str]
    ip: str


def _matches(presented: Optional[str], secret: Optional[str]) -> bool:
    if not presented or not secret: return False
    return secrets.compare_digest(presented.encode(), secret.encode())


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization: return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer": return None
    return token.strip() or None


def client_ip(request: Request, trust_proxy: bool = False) -> str:
    """Peer address, or the hop appended by our single trusted proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if trust_proxy and forwarded:
        return forwarded.split(",")[-1].strip()
    return request.client.host if request.client else "unknown"


class CredentialClassifier:
    """Maps presented credentials to a tier.

    Rules are tried in order and the first match wins. The block list is
    checked before any of them, so a blocked IP is refused whatever it sends.
    A valid secondary key from an IP nobody has approved yet is queued for
    approval and refused with ``ip_not_approved``, which tells the caller to
    wait for a maintainer rather than retry with another key.
    """

    def __init__(self, store: IPApprovalStore, maintainer_key: str, secondary_key: Optional[str] = None,
                 spectator_key: Optional[str] = None, api_key: Optional[str] = None,
                 on_proposal: Optional[Callable[[str], None]] = None):
        self.store = store
        self._secondary_key = secondary_key
        self._on_proposal = on_proposal
        self.rules: List[Tuple[Tier, Callable[[Credentials], bool]]] = [
            (Tier.MAINTAINER, lambda c: _matches(c.bearer, maintainer_key)),
            (Tier.SECONDARY, lambda c: _matches(c.bearer, secondary_key) and store.is_approved(c.ip)),
            (Tier.SPECTATOR, lambda c: _matches(c.bearer, spectator_key)),
            (Tier.EXTERNAL_API, lambda c: _matches(c.query_key, api_key)),
        ]

    def classify(self, authorization: Optional[str], query_key: Optional[str], ip: str) -> Tier:
        return self._classify(Credentials(bearer_token(authorization), query_key, ip))

    def classify_key(self, key: Optional[str], ip: str) -> Tier:
        return self._classify(Credentials(key, key, ip))

    def _classify(self, credentials: Credentials) -> Tier:
        if self.store.is_blocked(credentials.ip):
            logging.warning(f"Rejected request from blocked IP {credentials.ip}.")
            raise Forbidden("ip_blocked", "This IP address has been blocked.")

        for tier, rule in self.rules:
            if rule(credentials):
                return tier

        if _matches(credentials.bearer, self._secondary_key):
            if self.store.propose(credentials.ip) and self._on_proposal:
                self._on_proposal(credentials.ip)
            raise Unauthorized("ip_not_approved", "This IP is awaiting maintainer approval.")

        logging.warning(f"Invalid credentials presented from {credentials.ip}.")
        raise Unauthorized("invalid_credential", "Unauthorized access: Invalid key.")
