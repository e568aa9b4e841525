import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from models import LibrarySound, LibraryStats, SoundGeneration

logger = logging.getLogger(__name__)

LIBRARY_FIELDS = ("name", "group", "liked", "tags", "parent_id", "lineage_id", "generation")

GROUP_BY_CATEGORY = {
    "FX": "Sound Effects",
    "Foley": "Sound Effects",
    "UI": "Sound Effects",
    "Ambience": "Ambience",
    "Melody": "Musical Elements",
    "Bass": "Musical Elements",
    "Percussion": "Musical Elements",
}


def detect_group(sound: SoundGeneration) -> str:
    """Library group for a new sound, by category."""
    return GROUP_BY_CATEGORY[sound.parameters.type]


class SoundLibrary:
    """Sound metadata stored as documents in a MongoDB collection (motor)."""

    def __init__(self, collection):
        self.collection = collection

    async def get(self, sound_id: str) -> Optional[LibrarySound]:
        doc = await self.collection.find_one({"id": sound_id}, {"_id": 0})
        return LibrarySound(**doc) if doc else None

    async def save(self, sound: SoundGeneration) -> LibrarySound:
        """Store a sound. Saving an id that already exists returns the stored copy."""
        existing = await self.get(sound.id)
        if existing:
            return existing

        library_sound = LibrarySound(**{
            **sound.model_dump(),
            "tags": list(sound.parameters.mood_tags),
            "group": detect_group(sound),
            "downloaded_at": datetime.now(timezone.utc),
        })
        await self.collection.insert_one(library_sound.model_dump(mode="json"))
        return library_sound

    async def update(self, sound_id: str, patch: Dict[str, Any]) -> Optional[LibrarySound]:
        unknown = set(patch) - set(LIBRARY_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        result = await self.collection.update_one({"id": sound_id}, {"$set": dict(patch)})
        if result.matched_count == 0:
            return None
        return await self.get(sound_id)

    async def list_sounds(self, limit: Optional[int] = 500) -> List[LibrarySound]:
        docs = await self.collection.find({}, {"_id": 0}).sort("created_at", -1).to_list(limit)
        return [LibrarySound(**d) for d in docs]

    async def stats(self) -> LibraryStats:
        sounds = await self.list_sounds(limit=None)
        by_category: Dict[str, int] = {}
        by_group: Dict[str, int] = {}
        for s in sounds:
            by_category[s.parameters.type] = by_category.get(s.parameters.type, 0) + 1
            group = s.group or "Ungrouped"
            by_group[group] = by_group.get(group, 0) + 1

        return LibraryStats(
            total_sounds=len(sounds),
            total_liked=sum(1 for s in sounds if s.liked),
            total_groups=len({s.group for s in sounds if s.group}),
            sounds_by_category=by_category,
            sounds_by_group=by_group,
        )
