from abc import ABC, abstractmethod
from typing import Iterable, Optional

from worktrack.schemas.work import Connector


class ConnectorRegistry(ABC):
    """Resolves connector ids; owned by connector management."""

    @abstractmethod
    async def get_by_id(self, connector_id: str) -> Optional[Connector]:
        ...


class StaticConnectorRegistry(ConnectorRegistry):
    """Connectors known up front, e.g. a worker's own or a test's."""

    def __init__(self, connectors: Iterable[Connector] = ()):
        self._connectors: dict[str, Connector] = {}
        for connector in connectors:
            if connector.id in self._connectors:
                raise ValueError(f"Duplicate connector id: {connector.id}")
            self._connectors[connector.id] = connector

    async def get_by_id(self, connector_id: str) -> Optional[Connector]:
        return self._connectors.get(connector_id)
