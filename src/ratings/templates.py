from typing import List, Optional
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select
import math
import re
import logging

from .engine import RatingComputationFailed
from .models import RatingTemplate
from .schemas import RatingTemplateCreate, RatingTemplateUpdate, StatTotals

LOG = logging.getLogger(__name__)

DEFAULT_TEMPLATE_ID = "pure-win-loss"

DEFAULT_TEMPLATE = {
    "id": DEFAULT_TEMPLATE_ID,
    "name": "Pure Win/Loss",
    "description": "Only the team result moves ratings. No stat adjustments.",
    "enabled": True,
    "weights": {
        "kills": 0,
        "deaths": 0,
        "assists": 0,
        "flash_assists": 0,
        "headshot_kills": 0,
        "damage": 0,
        "utility_damage": 0,
        "kast": 0,
        "mvps": 0,
        "score": 0,
        "adr": 0,
    },
}


class RatingTemplateError(Exception):
    """Base exception for rating template errors"""
    pass


def generate_template_id(name: str) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "", name.lower())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    if not slug:
        raise RatingTemplateError(f"Cannot derive a template id from {name!r}")
    return slug


def compute_stat_adjustment(template: RatingTemplate, stats: StatTotals) -> int:
    """Weighted sum of a player's stats, clamped to the template bounds and rounded.

    ADR is derived from damage and rounds played. Raises
    RatingComputationFailed when the weights or stats cannot be combined.
    """
    adr = stats.damage / stats.rounds_played if stats.rounds_played > 0 else 0.0
    values = stats.model_dump()
    values["adr"] = adr

    adjustment = 0.0
    for key, weight in (template.weights or {}).items():
        if key not in values:
            raise RatingComputationFailed(f"Template {template.id} weights unknown stat {key!r}")
        try:
            adjustment += float(values[key]) * float(weight)
        except (TypeError, ValueError) as e:
            raise RatingComputationFailed(f"Bad weight for {key} in template {template.id}: {e}")

    if not math.isfinite(adjustment):
        raise RatingComputationFailed(f"Template {template.id} produced a non-finite adjustment")

    if template.min_adjustment is not None:
        adjustment = max(template.min_adjustment, adjustment)
    if template.max_adjustment is not None:
        adjustment = min(template.max_adjustment, adjustment)
    return round(adjustment)


class RatingTemplateService:
    async def get_template(self, template_id: str, session: AsyncSession) -> Optional[RatingTemplate]:
        return await session.get(RatingTemplate, template_id)

    async def list_templates(self, session: AsyncSession) -> List[RatingTemplate]:
        stmt = select(RatingTemplate).order_by(RatingTemplate.name)
        return (await session.execute(stmt)).scalars().all()

    async def ensure_default(self, session: AsyncSession) -> RatingTemplate:
        """Create the default template, or re-enable it if someone disabled it"""
        template = await self.get_template(DEFAULT_TEMPLATE_ID, session)
        if template is None:
            template = RatingTemplate(**{**DEFAULT_TEMPLATE, "weights": dict(DEFAULT_TEMPLATE["weights"])})
            session.add(template)
            await session.commit()
            await session.refresh(template)
            LOG.info(f"Created default rating template {DEFAULT_TEMPLATE_ID}")
        elif not template.enabled:
            template.enabled = True
            session.add(template)
            await session.commit()
            await session.refresh(template)
            LOG.info(f"Re-enabled default rating template {DEFAULT_TEMPLATE_ID}")
        return template

    async def create_template(self, data: RatingTemplateCreate, session: AsyncSession) -> RatingTemplate:
        template_id = data.id or generate_template_id(data.name)
        if await self.get_template(template_id, session):
            raise RatingTemplateError(f"Template {template_id} already exists")
        self._check_bounds(data.min_adjustment, data.max_adjustment)

        template = RatingTemplate(id=template_id, **data.model_dump(exclude={"id"}))
        session.add(template)
        await session.commit()
        await session.refresh(template)
        LOG.info(f"Created rating template {template_id}")
        return template

    async def update_template(
        self,
        template_id: str,
        data: RatingTemplateUpdate,
        session: AsyncSession
    ) -> RatingTemplate:
        template = await self.get_template(template_id, session)
        if not template:
            raise RatingTemplateError(f"Template {template_id} not found")

        changes = data.model_dump(exclude_unset=True)
        if template_id == DEFAULT_TEMPLATE_ID and changes.get("enabled") is False:
            raise RatingTemplateError("The default template cannot be disabled")
        self._check_bounds(
            changes.get("min_adjustment", template.min_adjustment),
            changes.get("max_adjustment", template.max_adjustment),
        )

        for key, value in changes.items():
            setattr(template, key, dict(value) if key == "weights" else value)
        session.add(template)
        await session.commit()
        await session.refresh(template)
        return template

    async def delete_template(self, template_id: str, session: AsyncSession):
        if template_id == DEFAULT_TEMPLATE_ID:
            raise RatingTemplateError("The default template cannot be deleted")
        template = await self.get_template(template_id, session)
        if not template:
            raise RatingTemplateError(f"Template {template_id} not found")
        await session.delete(template)
        await session.commit()
        LOG.info(f"Deleted rating template {template_id}")

    def _check_bounds(self, min_adjustment: Optional[float], max_adjustment: Optional[float]):
        if min_adjustment is not None and max_adjustment is not None and min_adjustment > max_adjustment:
            raise RatingTemplateError("min_adjustment cannot exceed max_adjustment")


def create_rating_template_service() -> RatingTemplateService:
    return RatingTemplateService()
