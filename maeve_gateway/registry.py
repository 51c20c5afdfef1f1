"""Lookup of charge station details from a registry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum


class SecurityProfile(IntEnum):
    """How a charge station authenticates to the gateway."""

    UNSECURED_TRANSPORT_WITH_BASIC_AUTH = 0
    TLS_WITH_BASIC_AUTH = 1
    TLS_WITH_CLIENT_SIDE_CERTIFICATES = 2


@dataclass
class ChargeStation:
    """Registered details of a charge station."""

    client_id: str
    security_profile: SecurityProfile
    base64_sha256_password: str = ""


class DeviceRegistry(ABC):
    """Source of charge station details."""

    @abstractmethod
    def lookup_charge_station(self, client_id: str) -> ChargeStation | None:
        """Return the charge station with this id, or None if it is unknown."""


@dataclass
class MockRegistry(DeviceRegistry):
    """A registry held in memory."""

    charge_stations: dict[str, ChargeStation] = field(default_factory=dict)

    def lookup_charge_station(self, client_id: str) -> ChargeStation | None:
        return self.charge_stations.get(client_id)