"""Delivery branch by address: Yandex geocoder + delivery zone polygons."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from app.logging_config import get_logger
from app.services.data_files import DATA_DIR, load_yaml
from app.services.order_session import ASK_RECIPIENT_ADDRESS

logger = get_logger("geocode_service")

_ZONES_PATH = DATA_DIR / "delivery_zones.yaml"

GEOCODER_URL = "https://geocode-maps.yandex.ru/1.x/"
ACCEPTED_PRECISIONS = {"exact", "number", "near", "range"}


@dataclass(frozen=True)
class DeliveryZone:
    name: str
    branch_id: int
    polygon: tuple[tuple[float, float], ...]  # (lat, lng)


def load_delivery_zones(path: Path = _ZONES_PATH) -> list[DeliveryZone]:
    zones = []
    for raw in load_yaml(path).get("zones") or []:
        polygon = tuple((float(lat), float(lng)) for lat, lng in raw.get("polygon") or [])
        zones.append(DeliveryZone(name=str(raw["name"]), branch_id=int(raw["branch_id"]), polygon=polygon))
    return zones


def point_in_polygon(lat: float, lng: float, polygon: tuple[tuple[float, float], ...]) -> bool:
    """Ray casting; x is longitude, y is latitude."""
    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        yi, xi = polygon[i]
        yj, xj = polygon[j]
        if (yi > lat) != (yj > lat) and lng < (xj - xi) * (lat - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


class GeocodeService:
    def __init__(self, api_key: Optional[str], zones: Optional[list[DeliveryZone]] = None, timeout: float = 10.0):
        self.api_key = api_key
        self.zones = zones if zones is not None else load_delivery_zones()
        self.timeout = timeout

    def detect_zone(self, lat: float, lng: float) -> Optional[DeliveryZone]:
        for zone in self.zones:
            if point_in_polygon(lat, lng, zone.polygon):
                return zone
        return None

    async def geocode_address(self, address: str) -> Optional[tuple[float, float]]:
        """(lat, lng) of the address, or None if not found or too imprecise."""
        if not self.api_key:
            logger.error("Yandex geocoder API key is not configured")
            return None

        params = {
            "apikey": self.api_key,
            "geocode": address,
            "format": "json",
            "lang": "ru_RU",
            "results": 1,
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(GEOCODER_URL, params=params)
        response.raise_for_status()
        data = response.json()

        members = ((data.get("response") or {}).get("GeoObjectCollection") or {}).get("featureMember") or []
        geo_object = (members[0] if members else {}).get("GeoObject") or {}
        pos = (geo_object.get("Point") or {}).get("pos")
        if not pos:
            logger.info("Address not found by geocoder", extra={"context": {"address": address}})
            return None

        precision = (
            (geo_object.get("metaDataProperty") or {}).get("GeocoderMetaData") or {}
        ).get("precision")
        if precision not in ACCEPTED_PRECISIONS:
            logger.info(
                "Geocoder precision too low",
                extra={"context": {"address": address, "precision": precision}},
            )
            return None

        lng, lat = (float(part) for part in pos.split())
        return lat, lng

    async def resolve_branch(self, address: Optional[str]) -> Optional[int]:
        """Branch enum id for a delivery address. Any failure gives None."""
        if not address or address == ASK_RECIPIENT_ADDRESS:
            return None

        try:
            coords = await self.geocode_address(address)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Geocoding failed", extra={"context": {"address": address, "error": str(e)}})
            return None
        if coords is None:
            return None

        zone = self.detect_zone(*coords)
        if zone is None:
            logger.info("Address is outside delivery zones", extra={"context": {"address": address}})
            return None

        logger.info(
            "Delivery zone detected",
            extra={"context": {"address": address, "zone": zone.name, "branch_id": zone.branch_id}},
        )
        return zone.branch_id
