import os
from abc import ABC, abstractmethod
from typing import Iterable


class CategoryRegistry(ABC):
    @abstractmethod
    def is_category_active(self, category_id: int) -> bool:
        raise NotImplementedError


class AllowAllCategories(CategoryRegistry):
    def is_category_active(self, category_id: int) -> bool:
        return True


class StaticCategoryRegistry(CategoryRegistry):
    def __init__(self, active_ids: Iterable[int]) -> None:
        self._active = frozenset(int(value) for value in active_ids)

    def is_category_active(self, category_id: int) -> bool:
        return int(category_id) in self._active

    @classmethod
    def from_env(cls, name: str = "SLOTBOOK_ACTIVE_CATEGORIES") -> "StaticCategoryRegistry":
        raw = os.getenv(name, "")
        ids = []
        for item in raw.split(","):
            item = item.strip()
            if item.lstrip("-").isdigit():
                ids.append(int(item))
        return cls(ids)
