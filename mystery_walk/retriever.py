"""Evidence retrieval and geocoding.

Every fact handed to the puzzle stages must come from somewhere: the model's
own stop list, or evidence gathered here. Nothing in this module fabricates
a fact. A source that fails or finds nothing contributes an empty list, and
retrieval for the spot carries on with the remaining sources.

Sources:
    Wikipedia (ja)  — search + intro extract, facts pulled out with regexes
    Google Places   — display name, only when an API key is configured

Geocoding goes through the Google Geocoding API, biased to a box around the
quest origin. Both pieces are async callables so the pipeline can be driven
with test doubles:

    async def retrieve(spot_id, spot_name, lat, lng) -> EvidencePack
    async def geocode(spot_name, center_lat, center_lng, radius_km) -> GeoPoint | None
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from math import cos, radians
from typing import Protocol
from urllib.parse import quote

import httpx

from mystery_walk.geo import distance_m
from mystery_walk.models import SOURCE_CONFIDENCE, Evidence, EvidencePack, GeoPoint

logger = logging.getLogger(__name__)


class Retriever(Protocol):
    async def __call__(self, spot_id: str, spot_name: str, lat: float, lng: float) -> EvidencePack: ...


class Geocoder(Protocol):
    async def __call__(
        self,
        spot_name: str,
        center_lat: float | None = None,
        center_lng: float | None = None,
        radius_km: float = 2.0,
    ) -> GeoPoint | None: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Fact extraction from encyclopedia text
# ---------------------------------------------------------------------------

# (pattern, evidence type)
_EVIDENCE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(\d{4})年に?(建立|創建|完成|開業|設立)"), "inscription"),
    (re.compile(r"(高さ|全長|全高)約?(\d+(?:\.\d+)?)\s*(メートル|m|センチ|cm)"), "monument"),
    (re.compile(r"(国宝|重要文化財|世界遺産|登録有形文化財)"), "plaque"),
    (re.compile(r"(祭神|御祭神|祀られている)[はが]?([^。、]+)"), "signboard"),
    (re.compile(r"正式名称[はが]?「([^」]+)」"), "official_name"),
    (re.compile(r"(別名|通称)[はが]?「([^」]+)」"), "official_name"),
]


def extract_evidences_from_text(text: str, source_url: str, source_type: str = "wikipedia") -> list[Evidence]:
    """Pull citable facts out of free text with fixed patterns."""
    now = _now()
    evidences: list[Evidence] = []
    for pattern, ev_type in _EVIDENCE_PATTERNS:
        for match in pattern.finditer(text):
            evidences.append(Evidence(
                id=f"wiki-{ev_type}-{len(evidences)}",
                type=ev_type,
                content=match.group(0),
                source_url=source_url,
                source_type=source_type,
                is_permanent=True,
                confidence=SOURCE_CONFIDENCE[source_type],
                location_description="現地案内板等で確認可能",
                retrieved_at=now,
            ))
    return evidences


def sufficiency_score(evidences: list[Evidence]) -> float:
    """0–1 score from evidence count, mean confidence and permanence."""
    if not evidences:
        return 0.0
    count_score = min(len(evidences) / 5, 1.0)
    avg_confidence = sum(e.confidence for e in evidences) / len(evidences)
    permanent_ratio = sum(1 for e in evidences if e.is_permanent) / len(evidences)
    return count_score * 0.3 + avg_confidence * 0.5 + permanent_ratio * 0.2


# ---------------------------------------------------------------------------
# EvidenceRetriever
# ---------------------------------------------------------------------------

class EvidenceRetriever:
    """Gathers an EvidencePack for one spot from all configured sources.

    Args:
        maps_api_key: Google Maps Platform key. Empty disables Places lookups.
        lang:         Wikipedia language edition.
        timeout:      Per-request HTTP timeout in seconds.
    """

    def __init__(self, maps_api_key: str = "", lang: str = "ja", timeout: float = 10.0) -> None:
        self._maps_api_key = maps_api_key
        self._lang = lang
        self._timeout = timeout

    @property
    def _wiki_api(self) -> str:
        return f"https://{self._lang}.wikipedia.org/w/api.php"

    async def _fetch_wikipedia(self, spot_name: str) -> tuple[str, list[Evidence]]:
        """Return (intro extract, evidences). ("", []) when nothing usable is found."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                search = await client.get(self._wiki_api, params={
                    "action": "query",
                    "list": "search",
                    "srsearch": spot_name,
                    "format": "json",
                })
                search.raise_for_status()
                hits = search.json().get("query", {}).get("search", [])
                if not hits:
                    return "", []
                title = hits[0]["title"]

                page_resp = await client.get(self._wiki_api, params={
                    "action": "query",
                    "titles": title,
                    "prop": "extracts|info",
                    "exintro": "true",
                    "explaintext": "true",
                    "inprop": "url",
                    "format": "json",
                })
                page_resp.raise_for_status()
                pages = page_resp.json().get("query", {}).get("pages", {})

            page = next(iter(pages.values()), None) if pages else None
            if not page or int(page.get("pageid", -1)) < 0:
                return "", []
            extract = page.get("extract") or ""
            url = page.get("fullurl") or f"https://{self._lang}.wikipedia.org/wiki/{quote(title)}"
        # Malformed bodies raise AttributeError/TypeError while being read
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            logger.warning("Wikipedia lookup failed for %r: %s", spot_name, e)
            return "", []

        return extract, extract_evidences_from_text(extract, url, "wikipedia")

    async def _fetch_places(self, spot_name: str, lat: float, lng: float) -> list[Evidence]:
        if not self._maps_api_key:
            return []
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    "https://places.googleapis.com/v1/places:searchText",
                    json={
                        "textQuery": spot_name,
                        "locationBias": {
                            "circle": {"center": {"latitude": lat, "longitude": lng}, "radius": 500},
                        },
                        "languageCode": "ja",
                    },
                    headers={
                        "Content-Type": "application/json",
                        "X-Goog-Api-Key": self._maps_api_key,
                        "X-Goog-FieldMask": "places.displayName,places.formattedAddress,places.types",
                    },
                )
                resp.raise_for_status()
                places = resp.json().get("places") or []
            name = (places[0].get("displayName") or {}).get("text") if places else None
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            logger.warning("Places lookup failed for %r: %s", spot_name, e)
            return []

        if not isinstance(name, str) or not name:
            return []
        return [Evidence(
            id="places-name-0",
            type="official_name",
            content=name,
            source_url=f"https://www.google.com/maps/search/?api=1&query={quote(spot_name)}",
            source_type="google_places",
            is_permanent=True,
            confidence=SOURCE_CONFIDENCE["google_places"],
            location_description="施設入口または看板",
            retrieved_at=_now(),
        )]

    async def __call__(self, spot_id: str, spot_name: str, lat: float, lng: float) -> EvidencePack:
        (description, wiki_evidences), places_evidences = await asyncio.gather(
            self._fetch_wikipedia(spot_name),
            self._fetch_places(spot_name, lat, lng),
        )
        evidences = [
            e.model_copy(update={"id": f"evidence-{spot_id}-{i}"})
            for i, e in enumerate([*wiki_evidences, *places_evidences])
        ]
        logger.debug("evidence spot=%s name=%r count=%d", spot_id, spot_name, len(evidences))
        return EvidencePack(
            spot_id=spot_id,
            spot_name=spot_name,
            lat=lat,
            lng=lng,
            official_description=description,
            evidences=evidences,
            retrieved_at=_now(),
            sufficiency_score=sufficiency_score(evidences),
        )


async def retrieve_evidences_for_spots(
    retriever: Retriever,
    spots: list[tuple[str, str, float, float]],
    batch_size: int = 5,
) -> list[EvidencePack]:
    """Retrieve packs for (spot_id, name, lat, lng) tuples, batch_size at a time."""
    packs: list[EvidencePack] = []
    for i in range(0, len(spots), batch_size):
        batch = spots[i:i + batch_size]
        packs.extend(await asyncio.gather(*(retriever(*spot) for spot in batch)))
    return packs


# ---------------------------------------------------------------------------
# GoogleGeocoder
# ---------------------------------------------------------------------------

class GoogleGeocoder:
    """Resolves a spot name to coordinates. Returns None instead of raising."""

    def __init__(self, api_key: str = "", timeout: float = 10.0) -> None:
        self._api_key = api_key
        self._timeout = timeout

    async def __call__(
        self,
        spot_name: str,
        center_lat: float | None = None,
        center_lng: float | None = None,
        radius_km: float = 2.0,
    ) -> GeoPoint | None:
        if not self._api_key:
            logger.debug("geocoding skipped for %r: no API key", spot_name)
            return None

        params = {
            "address": f"{spot_name} 日本",
            "language": "ja",
            "region": "jp",
            "key": self._api_key,
        }
        has_center = center_lat is not None and center_lng is not None
        if has_center:
            # ~111 km per degree of latitude
            lat_delta = radius_km / 111
            lng_delta = radius_km / (111 * cos(radians(center_lat)))
            params["bounds"] = (
                f"{center_lat - lat_delta},{center_lng - lng_delta}|"
                f"{center_lat + lat_delta},{center_lng + lng_delta}"
            )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get("https://maps.googleapis.com/maps/api/geocode/json", params=params)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Geocoding failed for %r: %s", spot_name, e)
            return None

        if not isinstance(data, dict):
            logger.warning("Geocoding returned a malformed body for %r", spot_name)
            return None
        results = data.get("results") or []
        if data.get("status") != "OK" or not results:
            logger.warning("Geocoding found nothing for %r (status=%s)", spot_name, data.get("status"))
            return None

        result = results[0] if isinstance(results, list) else None
        geometry = result.get("geometry") if isinstance(result, dict) else None
        location = geometry.get("location") if isinstance(geometry, dict) else None
        if not isinstance(location, dict) or not all(
            isinstance(location.get(k), (int, float)) for k in ("lat", "lng")
        ):
            return None

        if has_center:
            dist_km = distance_m(center_lat, center_lng, location["lat"], location["lng"]) / 1000
            if dist_km > radius_km * 2:
                logger.warning(
                    "Geocoding result too far: %r is %.1fkm from centre (limit %.1fkm)",
                    spot_name, dist_km, radius_km,
                )
                return None

        return GeoPoint(
            lat=location["lat"],
            lng=location["lng"],
            place_id=result.get("place_id"),
            formatted_address=result.get("formatted_address"),
        )
