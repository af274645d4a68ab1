"""
Admin Router
============

Staff operations on keys, whitelist and denylist. Every endpoint requires
the ``X-Admin-Token`` header matching KEYLEDGER_ADMIN_TOKEN; while no token is
configured the whole surface answers 403.

Keys:
    POST   /api/admin/keys/issue                  - generate pending keys
    GET    /api/admin/keys/pending                - list pending keys
    POST   /api/admin/keys/{key}/reset-device     - clear one device binding
Users:
    GET    /api/admin/users/{identity}/keys       - active keys (force_fresh optional)
    DELETE /api/admin/users/{identity}/keys       - revoke every key
    PUT    /api/admin/users/{identity}/device-limit
    POST   /api/admin/users/{identity}/invalidate-cache
Lists:
    GET/POST /api/admin/whitelist,  DELETE /api/admin/whitelist/{identity}
    GET/POST /api/admin/denylist,   DELETE /api/admin/denylist/{identity}
"""

import hmac
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, Field

from keyledger.dependencies import Services, get_key_service, get_services
from keyledger.services.key_service import KeyService

logger = logging.getLogger(__name__)


async def require_admin(
    x_admin_token: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> None:
    expected = services.settings.admin_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin surface disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


router = APIRouter(dependencies=[Depends(require_admin)])


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class IssueKeysRequest(BaseModel):
    count: int = Field(1, description="Number of keys to generate")
    validity_days: Optional[int] = Field(None, description="Days of validity after redemption; null or <= 0 = permanent")
    issued_by: str = Field("admin", min_length=1, max_length=128)


class IssueKeysResponse(BaseModel):
    keys: List[str]
    count: int
    permanent: bool


class PendingKeyResponse(BaseModel):
    key: str
    issued_by: str
    issued_at: datetime
    validity_days: Optional[int] = None


class DeviceLimitRequest(BaseModel):
    limit: int
    alias_label: Optional[str] = None


class ListEntryRequest(BaseModel):
    identity: str = Field(..., min_length=1, max_length=64)
    alias_label: Optional[str] = Field(None, max_length=128)
    actor: str = Field("admin", min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

@router.post("/keys/issue", response_model=IssueKeysResponse, status_code=status.HTTP_201_CREATED)
async def issue_keys(body: IssueKeysRequest, keys: KeyService = Depends(get_key_service)):
    issued = await keys.issue_keys(body.count, body.validity_days, issued_by=body.issued_by)
    permanent = body.validity_days is None or body.validity_days <= 0
    return IssueKeysResponse(keys=issued, count=len(issued), permanent=permanent)


@router.get("/keys/pending")
async def list_pending_keys(keys: KeyService = Depends(get_key_service)):
    pending = await keys.list_pending_keys()
    return {
        "pending": [
            PendingKeyResponse(
                key=key,
                issued_by=record.issued_by,
                issued_at=record.issued_at,
                validity_days=record.validity_days,
            )
            for key, record in pending
        ],
        "count": len(pending),
    }


@router.post("/keys/{key}/reset-device")
async def reset_device(key: str, keys: KeyService = Depends(get_key_service)):
    await keys.reset_device_binding(key)
    return {"key": key.strip().upper(), "reset": True}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@router.get("/users/{identity}/keys")
async def get_user_keys(
    identity: str,
    alias_label: Optional[str] = Query(None),
    force_fresh: bool = Query(False, description="Bypass the cache"),
    keys: KeyService = Depends(get_key_service),
):
    active = await keys.get_user_active_keys(identity, alias_label, force_fresh=force_fresh)
    return {"identity": identity, "keys": active, "count": len(active)}


@router.delete("/users/{identity}/keys")
async def revoke_user_keys(
    identity: str,
    alias_label: Optional[str] = Query(None),
    keys: KeyService = Depends(get_key_service),
):
    revoked = await keys.revoke_all_keys(identity, alias_label)
    return {"identity": identity, "revoked": revoked}


@router.put("/users/{identity}/device-limit")
async def set_device_limit(
    identity: str,
    body: DeviceLimitRequest,
    keys: KeyService = Depends(get_key_service),
):
    updated = await keys.set_device_limit(identity, body.alias_label, body.limit)
    return {"identity": identity, "updated": updated, "limit": body.limit}


@router.post("/users/{identity}/invalidate-cache")
async def invalidate_cache(
    identity: str,
    alias_label: Optional[str] = Query(None),
    keys: KeyService = Depends(get_key_service),
):
    active = await keys.invalidate_user_cache(identity, alias_label)
    return {"identity": identity, "keys": active, "count": len(active)}


# ---------------------------------------------------------------------------
# Whitelist / denylist
# ---------------------------------------------------------------------------

@router.get("/whitelist")
async def list_whitelist(keys: KeyService = Depends(get_key_service)):
    grants = await keys.list_whitelist()
    return {"whitelist": [g.model_dump(mode="json") for g in grants], "count": len(grants)}


@router.post("/whitelist", status_code=status.HTTP_201_CREATED)
async def add_to_whitelist(body: ListEntryRequest, keys: KeyService = Depends(get_key_service)):
    key = await keys.add_to_whitelist(body.identity, body.alias_label, granted_by=body.actor)
    return {"identity": body.identity, "key": key}


@router.delete("/whitelist/{identity}")
async def remove_from_whitelist(
    identity: str,
    alias_label: Optional[str] = Query(None),
    keys: KeyService = Depends(get_key_service),
):
    await keys.remove_from_whitelist(identity, alias_label)
    return {"identity": identity, "removed": True}


@router.get("/denylist")
async def list_denylist(keys: KeyService = Depends(get_key_service)):
    entries = await keys.list_denylist()
    return {"denylist": [e.model_dump(mode="json") for e in entries], "count": len(entries)}


@router.post("/denylist", status_code=status.HTTP_201_CREATED)
async def add_to_denylist(body: ListEntryRequest, keys: KeyService = Depends(get_key_service)):
    deleted = await keys.add_to_denylist(body.identity, body.alias_label, added_by=body.actor)
    return {"identity": body.identity, "keys_deleted": deleted}


@router.delete("/denylist/{identity}")
async def remove_from_denylist(identity: str, keys: KeyService = Depends(get_key_service)):
    await keys.remove_from_denylist(identity)
    return {"identity": identity, "removed": True}
