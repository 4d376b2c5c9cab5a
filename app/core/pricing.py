"""Model pricing: catalog + admin overrides behind an atomically swapped snapshot.

Prices are USD per token. The catalog is LiteLLM's public price list filtered
to one provider family; overrides come from the ``model_pricing`` table and
always win. Each refresh builds a complete new ``PriceSnapshot`` off to the
side and publishes it with a single attribute assignment, so a concurrent
lookup sees either the old table or the new one, never a mix.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType

import httpx
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from app.core import diagnostics
from app.core.config import get_settings
from app.core.errors import PricingUnavailable
from app.models.base import utcnow
from app.models.pricing import CatalogPrice, ModelPriceOverride

logger = logging.getLogger(__name__)

PER_MILLION = 1_000_000

# Azure deployments spell some model names differently from the catalog
_NORMALIZATIONS: tuple[tuple[str, str], ...] = (
    ("gpt-35-turbo", "gpt-3.5-turbo"),
)


@dataclass(frozen=True, slots=True)
class ModelPrice:
    input_per_token: float
    output_per_token: float

    def cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        return prompt_tokens * self.input_per_token + completion_tokens * self.output_per_token


@dataclass(frozen=True, slots=True)
class CostResult:
    cost_usd: float
    unpriced: bool


def _freeze(prices: Mapping[str, ModelPrice]) -> Mapping[str, ModelPrice]:
    return MappingProxyType({k.lower(): v for k, v in prices.items()})


@dataclass(frozen=True)
class PriceSnapshot:
    catalog: Mapping[str, ModelPrice] = field(default_factory=lambda: _freeze({}))
    overrides: Mapping[str, ModelPrice] = field(default_factory=lambda: _freeze({}))
    catalog_loaded_at: datetime | None = None

    def lookup(self, name: str) -> ModelPrice | None:
        return self.overrides.get(name) or self.catalog.get(name)


def _candidates(model: str) -> Iterator[str]:
    """Names to try after the exact match, in order."""
    normalized = model
    for old, new in _NORMALIZATIONS:
        normalized = normalized.replace(old, new)
    if normalized != model:
        yield normalized

    # gpt-4o-2024-08-06 -> gpt-4o-2024-08 -> gpt-4o-2024 -> gpt-4o -> gpt
    for name in dict.fromkeys((model, normalized)):
        candidate = name
        while (cut := candidate.rfind("-")) > 0:
            candidate = candidate[:cut]
            yield candidate


def parse_catalog(payload: dict, provider: str) -> dict[str, ModelPrice]:
    """Extract per-token prices for one provider family from LiteLLM's JSON."""
    prices: dict[str, ModelPrice] = {}
    prefix = f"{provider}/"
    for name, entry in payload.items():
        if not isinstance(entry, dict) or entry.get("litellm_provider") != provider:
            continue
        input_cost = entry.get("input_cost_per_token")
        output_cost = entry.get("output_cost_per_token")
        if not isinstance(input_cost, (int, float)) or not isinstance(output_cost, (int, float)):
            continue
        if name.lower().startswith(prefix):
            name = name[len(prefix):]
        prices[name.lower()] = ModelPrice(float(input_cost), float(output_cost))
    return prices


class PricingTable:
    """Process-wide price resolver."""

    def __init__(self) -> None:
        self._snapshot = PriceSnapshot()

    @property
    def snapshot(self) -> PriceSnapshot:
        return self._snapshot

    # ── Lookups (hot path, synchronous) ──────────────────────

    def resolve(self, model: str) -> ModelPrice | None:
        """Override exact, catalog exact, then normalized / prefix-shortened names."""
        snap = self._snapshot
        name = model.strip().lower()
        if not name:
            return None
        price = snap.lookup(name)
        if price is not None:
            return price
        for candidate in _candidates(name):
            price = snap.lookup(candidate)
            if price is not None:
                return price
        return None

    def is_priced(self, model: str) -> bool:
        return self.resolve(model) is not None

    def cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> CostResult:
        """Cost of a completed request; unknown models cost 0 and are flagged."""
        price = self.resolve(model)
        if price is None:
            diagnostics.record_unknown_model(model)
            logger.warning("Unknown model %r: cost recorded as $0 and flagged", model)
            return CostResult(0.0, True)
        return CostResult(price.cost(prompt_tokens, completion_tokens), False)

    def effective_prices(self) -> dict[str, tuple[ModelPrice, str]]:
        snap = self._snapshot
        merged = {name: (price, "catalog") for name, price in snap.catalog.items()}
        merged.update({name: (price, "admin") for name, price in snap.overrides.items()})
        return dict(sorted(merged.items()))

    # ── Publishing ───────────────────────────────────────────

    def install_catalog(self, prices: Mapping[str, ModelPrice]) -> None:
        old = self._snapshot
        self._snapshot = PriceSnapshot(
            catalog=_freeze(prices),
            overrides=old.overrides,
            catalog_loaded_at=utcnow(),
        )
        logger.info("Installed price catalog with %d models", len(prices))

    def install_overrides(self, overrides: Mapping[str, ModelPrice]) -> None:
        old = self._snapshot
        self._snapshot = PriceSnapshot(
            catalog=old.catalog,
            overrides=_freeze(overrides),
            catalog_loaded_at=old.catalog_loaded_at,
        )
        if overrides:
            logger.info("Applied %d admin pricing overrides", len(overrides))

    def clear(self) -> None:
        self._snapshot = PriceSnapshot()

    # ── Loading ──────────────────────────────────────────────

    async def reload_overrides(self, session: AsyncSession) -> None:
        result = await session.execute(select(ModelPriceOverride))
        self.install_overrides({
            row.model: ModelPrice(
                row.input_per_million / PER_MILLION,
                row.output_per_million / PER_MILLION,
            )
            for row in result.scalars().all()
        })

    async def fetch_catalog(self, client: httpx.AsyncClient) -> dict[str, ModelPrice]:
        settings = get_settings()
        resp = await client.get(settings.catalog_url, timeout=30.0)
        resp.raise_for_status()
        prices = parse_catalog(resp.json(), settings.catalog_provider)
        if not prices:
            raise ValueError(
                f"Catalog contained no prices for provider {settings.catalog_provider!r}"
            )
        logger.info(
            "Fetched %d %s model prices from catalog", len(prices), settings.catalog_provider
        )
        return prices

    async def refresh(self, client: httpx.AsyncClient, session: AsyncSession) -> None:
        """Fetch the catalog, persist it as the fallback snapshot, then publish it.

        Raises on failure; the currently published table is left untouched.
        """
        prices = await self.fetch_catalog(client)
        await _save_catalog(session, prices)
        # Overrides are published by the admin API as they change; keep whatever is current
        self.install_catalog(prices)

    async def load_at_startup(self, client: httpx.AsyncClient, session: AsyncSession) -> None:
        """Network first, then the persisted snapshot, then the configured policy."""
        await self.reload_overrides(session)
        try:
            await self.refresh(client, session)
            return
        except Exception:
            logger.warning("Failed to fetch price catalog, trying persisted snapshot",
                           exc_info=True)
            await session.rollback()

        cached = await _load_catalog(session)
        if cached:
            logger.warning("Using %d persisted catalog prices (online fetch failed)", len(cached))
            self.install_catalog(cached)
            return

        if get_settings().pricing_required_at_startup:
            raise PricingUnavailable(
                "No price catalog could be fetched and no persisted snapshot exists"
            )
        logger.error(
            "Starting without a price catalog: every model without an admin override "
            "is unpriced until the next successful refresh"
        )


async def _save_catalog(session: AsyncSession, prices: Mapping[str, ModelPrice]) -> None:
    now = utcnow()
    await session.execute(delete(CatalogPrice))
    session.add_all(
        CatalogPrice(
            model=name,
            input_per_token=price.input_per_token,
            output_per_token=price.output_per_token,
            fetched_at=now,
        )
        for name, price in prices.items()
    )
    await session.commit()


async def _load_catalog(session: AsyncSession) -> dict[str, ModelPrice]:
    result = await session.execute(select(CatalogPrice))
    return {
        row.model: ModelPrice(row.input_per_token, row.output_per_token)
        for row in result.scalars().all()
    }


async def run_refresh_loop(
    table: PricingTable,
    client: httpx.AsyncClient,
    session_factory: sessionmaker,
    interval_seconds: float,
) -> None:
    """Background task: refresh the catalog every ``interval_seconds``."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            async with session_factory() as session:
                await table.refresh(client, session)
            logger.info("Price catalog refreshed")
        except Exception:
            diagnostics.record_pricing_refresh_failure()
            logger.exception("Failed to refresh price catalog; keeping last good table")


pricing_table = PricingTable()
