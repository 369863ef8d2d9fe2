"""Item catalog loading.

The catalog is a YAML file with a top-level `items` list. Every entry is
validated before anything is written, so a bad file leaves the database
untouched.
"""

import logging
from pathlib import Path
from typing import List

import yaml
from pydantic import ValidationError

from practice_engine.config import settings
from practice_engine.db import practice_store as ps
from practice_engine.errors import InvalidConfig
from practice_engine.models.practice import CatalogItem

logger = logging.getLogger(__name__)


def load_catalog(path: Path) -> List[CatalogItem]:
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    entries = data.get("items", []) if isinstance(data, dict) else []

    items = []
    seen = set()
    for index, entry in enumerate(entries):
        try:
            item = CatalogItem.model_validate(entry)
        except ValidationError as exc:
            raise InvalidConfig(f"Catalog entry #{index} is invalid: {exc}") from exc
        if item.id in seen:
            raise InvalidConfig(f"Duplicate catalog item id {item.id}")
        if item.lang not in settings.supported_languages or item.exam not in settings.supported_exams:
            raise InvalidConfig(f"Catalog item {item.id} has an unsupported lang or exam")
        if item.level not in settings.supported_levels:
            raise InvalidConfig(f"Catalog item {item.id} has an unsupported level")
        unknown = set(item.skill_scope) - set(settings.supported_skills)
        if unknown:
            raise InvalidConfig(f"Catalog item {item.id} has unknown skills: {', '.join(sorted(unknown))}")
        seen.add(item.id)
        items.append(item)
    return items


async def seed_catalog(db, items: List[CatalogItem]) -> int:
    """Upsert catalog items. Calibrated difficulties are kept unless the file sets one."""
    for item in items:
        await ps.upsert_item(db, item.model_dump(exclude_none=True))
    logger.info("Seeded %d catalog items", len(items))
    return len(items)
