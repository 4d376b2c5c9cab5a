"""Effective model prices and administrator overrides."""

from fastapi import APIRouter, HTTPException, status

from app.api.deps import AdminAuth, Session
from app.core.pricing import PER_MILLION, pricing_table
from app.models.base import utcnow
from app.models.pricing import ModelPriceOverride, PriceEntryRead, PriceOverrideUpsert

router = APIRouter(prefix="/pricing", tags=["pricing"], dependencies=[AdminAuth])


@router.get("", response_model=list[PriceEntryRead])
async def list_prices() -> list[PriceEntryRead]:
    """Every priced model, per million tokens, with where its price came from."""
    return [
        PriceEntryRead(
            model=name,
            input_per_million=price.input_per_token * PER_MILLION,
            output_per_million=price.output_per_token * PER_MILLION,
            source=source,
        )
        for name, (price, source) in pricing_table.effective_prices().items()
    ]


@router.put("/{model}", response_model=PriceEntryRead)
async def set_price(model: str, body: PriceOverrideUpsert, session: Session) -> PriceEntryRead:
    """Create or replace an override. Takes effect for the next recorded request."""
    model = model.strip().lower()
    override = await session.get(ModelPriceOverride, model)
    if override is None:
        override = ModelPriceOverride(model=model, **body.model_dump())
    else:
        override.input_per_million = body.input_per_million
        override.output_per_million = body.output_per_million
        override.updated_at = utcnow()
    session.add(override)
    await session.commit()
    await pricing_table.reload_overrides(session)

    return PriceEntryRead(
        model=model,
        input_per_million=body.input_per_million,
        output_per_million=body.output_per_million,
        source="admin",
    )


@router.delete("/{model}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_price(model: str, session: Session) -> None:
    """Drop an override; the catalog price (if any) applies again immediately."""
    override = await session.get(ModelPriceOverride, model.strip().lower())
    if override is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No override for model")
    await session.delete(override)
    await session.commit()
    await pricing_table.reload_overrides(session)
