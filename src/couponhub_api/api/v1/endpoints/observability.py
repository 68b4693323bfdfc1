"""Entitlement observability snapshot."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from couponhub_api.api.dependencies.security import require_internal_api_key
from couponhub_api.observability.entitlements import get_entitlement_store

router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/entitlements",
    dependencies=[Depends(require_internal_api_key)],
    summary="Entitlement engine counters",
)
async def get_entitlement_snapshot() -> dict[str, object]:
    return get_entitlement_store().snapshot().as_dict()
