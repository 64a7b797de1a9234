"""
Party Registry Module

Read-only lookups of properties and persons owned by other parts of the
portal. The engine validates contract parties through this interface and
reports property occupancy back to it.
"""

from abc import ABC, abstractmethod
from typing import Dict, Tuple
from threading import RLock


class PartyRegistry(ABC):
    """Lookups for entities the engine references but does not own"""

    @abstractmethod
    def property_is_active(self, company_id: str, property_id: str) -> bool:
        pass

    @abstractmethod
    def person_is_active(self, company_id: str, person_id: str) -> bool:
        pass

    def set_property_available(self, company_id: str, property_id: str, available: bool) -> None:
        """Occupancy hook called on activation and termination (default no-op)"""
        pass


class InMemoryPartyRegistry(PartyRegistry):
    """Registry kept in process memory"""

    def __init__(self):
        self._properties: Dict[Tuple[str, str], bool] = {}
        self._persons: Dict[Tuple[str, str], bool] = {}
        self._available: Dict[Tuple[str, str], bool] = {}
        self._lock = RLock()

    def register_property(self, company_id: str, property_id: str, active: bool = True) -> None:
        with self._lock:
            self._properties[(company_id, property_id)] = active
            self._available.setdefault((company_id, property_id), True)

    def register_person(self, company_id: str, person_id: str, active: bool = True) -> None:
        with self._lock:
            self._persons[(company_id, person_id)] = active

    def deactivate_property(self, company_id: str, property_id: str) -> None:
        with self._lock:
            if (company_id, property_id) in self._properties:
                self._properties[(company_id, property_id)] = False

    def deactivate_person(self, company_id: str, person_id: str) -> None:
        with self._lock:
            if (company_id, person_id) in self._persons:
                self._persons[(company_id, person_id)] = False

    def property_is_active(self, company_id: str, property_id: str) -> bool:
        with self._lock:
            return self._properties.get((company_id, property_id), False)

    def person_is_active(self, company_id: str, person_id: str) -> bool:
        with self._lock:
            return self._persons.get((company_id, person_id), False)

    def set_property_available(self, company_id: str, property_id: str, available: bool) -> None:
        with self._lock:
            self._available[(company_id, property_id)] = available

    def is_property_available(self, company_id: str, property_id: str) -> bool:
        with self._lock:
            return self._available.get((company_id, property_id), True)
