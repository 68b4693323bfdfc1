"""Account, entitlement and ledger read endpoints for collaborators."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from couponhub_api.api.dependencies.engine import get_entitlement_engine
from couponhub_api.api.dependencies.security import require_internal_api_key
from couponhub_api.api.errors import entitlement_http_error
from couponhub_api.core.clock import ensure_utc
from couponhub_api.models import LedgerEntry
from couponhub_api.schemas.entitlements import (
    AccountResponse,
    EntitlementResponse,
    LedgerEntryResponse,
    LedgerWindowResponse,
    OpenAccountRequest,
)
from couponhub_api.services.entitlements import (
    AccountSnapshot,
    EntitlementEngine,
    EntitlementError,
    EntitlementSummary,
)

router = APIRouter(
    prefix="/accounts",
    tags=["accounts"],
    dependencies=[Depends(require_internal_api_key)],
)


def serialize_entitlement(summary: EntitlementSummary) -> EntitlementResponse:
    return EntitlementResponse(
        state=summary.state,
        daily_remaining=summary.daily_remaining,
        daily_limit=summary.daily_limit,
        unlimited=summary.unlimited,
        period_end=summary.period_end,
    )


def serialize_account(snapshot: AccountSnapshot) -> AccountResponse:
    return AccountResponse(
        account_id=snapshot.account_id,
        user_ref=snapshot.user_ref,
        points=snapshot.points,
        level=snapshot.level,
        points_earned=snapshot.points_earned,
        points_spent=snapshot.points_spent,
        uploads=snapshot.uploads,
        claims=snapshot.claims,
        boosts=snapshot.boosts,
        badges=snapshot.badges,
        achievements=snapshot.achievements,
        entitlement=serialize_entitlement(snapshot.entitlement),
        created_at=snapshot.created_at,
    )


def _serialize_ledger_entry(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        sequence=entry.sequence,
        delta=entry.delta,
        reason=entry.reason,
        resulting_balance=entry.resulting_balance,
        reference_id=entry.reference_id,
        created_at=ensure_utc(entry.created_at),
    )


@router.post("", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def open_account(
    payload: OpenAccountRequest,
    engine: EntitlementEngine = Depends(get_entitlement_engine),
) -> AccountResponse:
    """Open (or return the existing) account for a user."""

    try:
        account = await engine.open_account(payload.user_ref)
        snapshot = await engine.account_snapshot(account.id)
    except EntitlementError as exc:
        raise entitlement_http_error(exc) from exc
    return serialize_account(snapshot)


@router.get("/{account_id}", response_model=AccountResponse)
async def get_account(
    account_id: UUID,
    engine: EntitlementEngine = Depends(get_entitlement_engine),
) -> AccountResponse:
    try:
        snapshot = await engine.account_snapshot(account_id)
    except EntitlementError as exc:
        raise entitlement_http_error(exc) from exc
    return serialize_account(snapshot)


@router.get("/{account_id}/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    account_id: UUID,
    engine: EntitlementEngine = Depends(get_entitlement_engine),
) -> EntitlementResponse:
    """Read-only entitlement summary used for the claim pre-check."""

    try:
        summary = await engine.entitlement(account_id)
    except EntitlementError as exc:
        raise entitlement_http_error(exc) from exc
    return serialize_entitlement(summary)


@router.get("/{account_id}/ledger", response_model=LedgerWindowResponse)
async def list_ledger_entries(
    account_id: UUID,
    limit: int = Query(25, ge=1, le=100),
    cursor: int | None = Query(None, ge=1, description="Sequence to page back from"),
    engine: EntitlementEngine = Depends(get_entitlement_engine),
) -> LedgerWindowResponse:
    """Newest-first activity history."""

    try:
        page = await engine.list_entries(account_id, limit=limit, before_sequence=cursor)
    except EntitlementError as exc:
        raise entitlement_http_error(exc) from exc
    return LedgerWindowResponse(
        entries=[_serialize_ledger_entry(entry) for entry in page.entries],
        next_cursor=page.next_cursor,
    )
