from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from couponhub_api.db.session import get_session
from couponhub_api.services.entitlements import EntitlementEngine


async def get_entitlement_engine(db: AsyncSession = Depends(get_session)) -> EntitlementEngine:
    return EntitlementEngine(db)
