"""Durable IP approval state: pending requests, approved IPs and blocked IPs.

Each collection is one flat JSON document that is read and rewritten in full
on every mutation. Record counts stay small (tens to low thousands), and the
gateway runs as a single process with a single writer; two processes sharing
a data directory will lose updates.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from rank_gateway.errors import StoreUnreadable

PENDING = "pending_approvals"
APPROVED = "approved_ips"
BLOCKED = "blocked_ips"


class PendingApproval(BaseModel):
    ip: str
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    kind: str = "secondary_login"
    approved: bool = False


class DocumentBackend(Protocol):
    def read(self, name: str) -> list: ...
    def write(self, name: str, items: list) -> None: ...


class MemoryBackend:
    def __init__(self):
        self._documents: Dict[str, list] = {}

    def read(self, name: str) -> list:
        return json.loads(json.dumps(self._documents.get(name, [])))

    def write(self, name: str, items: list) -> None:
        self._documents[name] = json.loads(json.dumps(items))


class JsonFileBackend:
    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        return self.directory / f"{name}.json"

    def read(self, name: str) -> list:
        path = self._path(name)
        if not path.exists(): return []
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
        if not text.strip(): return []
        try:
            items = json.loads(text)
        except json.JSONDecodeError as e:
            raise StoreUnreadable("store_unreadable", f"{path} is not valid JSON: {e}")
        if not isinstance(items, list):
            raise StoreUnreadable("store_unreadable", f"{path} must hold a JSON list.")
        return items

    def write(self, name: str, items: list) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(items, f, indent=2)
            os.replace(tmp, self._path(name))
        except Exception:
            os.unlink(tmp)
            raise


class IPApprovalStore:
    def __init__(self, backend: DocumentBackend):
        self._backend = backend

    def _pending(self) -> List[PendingApproval]:
        return [PendingApproval.model_validate(item) for item in self._backend.read(PENDING)]

    def _save_pending(self, records: List[PendingApproval]):
        self._backend.write(PENDING, [r.model_dump(mode="json") for r in records])

    def _add_to_set(self, name: str, ip: str) -> bool:
        members = self._backend.read(name)
        if ip in members: return False
        members.append(ip)
        self._backend.write(name, members)
        return True

    def propose(self, ip: str) -> bool:
        records = self._pending()
        if any(r.ip == ip and not r.approved for r in records):
            return False
        records.append(PendingApproval(ip=ip))
        self._save_pending(records)
        logging.info(f"Secondary login from {ip} queued for approval.")
        return True

    def approve(self, ip: str) -> bool:
        records = self._pending()
        latest = next((r for r in reversed(records) if r.ip == ip and not r.approved), None)
        if latest is None:
            return False
        latest.approved = True
        self._save_pending(records)
        self._add_to_set(APPROVED, ip)
        logging.info(f"Approved secondary access for {ip}.")
        return True

    def reject(self, ip: str) -> int:
        records = self._pending()
        kept = [r for r in records if r.ip != ip]
        self._save_pending(kept)
        removed = len(records) - len(kept)
        logging.info(f"Rejected {removed} approval record(s) for {ip}.")
        return removed

    def list_pending(self) -> List[PendingApproval]:
        return [r for r in self._pending() if not r.approved]

    def is_approved(self, ip: str) -> bool:
        return ip in self._backend.read(APPROVED)

    def is_blocked(self, ip: str) -> bool:
        return ip in self._backend.read(BLOCKED)

    def block(self, ip: str) -> bool:
        added = self._add_to_set(BLOCKED, ip)
        if added: logging.warning(f"IP {ip} added to the block list.")
        return added


def open_store(data_dir: Optional[Path] = None) -> IPApprovalStore:
    """Opens the store and reads every document once, so a bad hand edit fails at startup."""
    backend = JsonFileBackend(data_dir) if data_dir else MemoryBackend()
    store = IPApprovalStore(backend)
    try:
        store.list_pending()
        backend.read(APPROVED)
        backend.read(BLOCKED)
    except StoreUnreadable as e:
        logging.error(f"Cannot open the approval store: {e.message}")
        raise
    except ValidationError as e:
        logging.error(f"Cannot open the approval store: malformed pending approval record: {e}")
        raise StoreUnreadable("store_unreadable", f"Malformed record in {PENDING}: {e}")
    return store
