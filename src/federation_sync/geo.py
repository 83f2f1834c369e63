"""federation_sync.geo

City lookups by postal code against the public communes API.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import requests

from federation_sync.credentials import BrowserFingerprint, browser_headers
from federation_sync.normalize import normalize_city

log = logging.getLogger(__name__)

COMMUNES_URL = "https://geo.api.gouv.fr/communes"


class GeoLookupError(Exception):
    """Raised when the communes API cannot be queried."""


@dataclass(frozen=True)
class City:
    name: str
    insee: str


def cities_by_zip_code(
    session: requests.Session,
    zip_code: str,
    fingerprint: BrowserFingerprint | None = None,
    timeout: int = 10,
) -> list[City]:
    """Every commune sharing zip_code (a postal code can cover several)."""
    try:
        resp = session.get(
            COMMUNES_URL,
            params={"codePostal": zip_code},
            headers=browser_headers(fingerprint),
            timeout=timeout,
        )
        resp.raise_for_status()
        rows = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise GeoLookupError(f"communes lookup for {zip_code!r} failed: {exc}") from exc
    return [City(name=r["nom"], insee=r["code"]) for r in rows if "nom" in r and "code" in r]


def find_insee(cities: list[City], city_name: str) -> str | None:
    """INSEE code of the commune whose normalized name matches city_name."""
    wanted = normalize_city(city_name)
    for city in cities:
        if normalize_city(city.name) == wanted:
            return city.insee
    return None
