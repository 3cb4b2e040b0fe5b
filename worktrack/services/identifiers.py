import uuid
from abc import ABC, abstractmethod


class IdentifierSource(ABC):
    @abstractmethod
    def new_work_id(self) -> str:
        """Return a globally unique work id."""
        ...


class UuidWorkIds(IdentifierSource):
    def new_work_id(self) -> str:
        return f"work_{uuid.uuid4()}"
