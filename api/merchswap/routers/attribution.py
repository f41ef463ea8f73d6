from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from merchswap.core.database import get_db
from merchswap.services.attribution import ActiveCase, resolve_active_case

router = APIRouter(tags=["attribution"])


@router.get("/attribution", response_model=ActiveCase)
async def get_active_case(
    product_id: str,
    variant_id: str | None = None,
    db: AsyncSession = Depends(get_db),
) -> ActiveCase:
    """Which case is live for a product (and variant).

    All fields are null when no experiment is running on the product.
    """
    return await resolve_active_case(db, product_id, variant_id)
