"""
Vendor routing suggestions.

For each Unassigned job with pickup coordinates, rank active vendors by
great-circle distance to the pickup (closest first), breaking ties by the
vendor's current backlog.  Suggestions are advisory: nothing is assigned.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from app.core.dispatch.domain import GeoPoint, Job, JobStatus, VendorRecord

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(a: GeoPoint, b: GeoPoint) -> float:
    return haversine_km(a.lat, a.lng, b.lat, b.lng)


@dataclass(frozen=True)
class VendorSuggestion:
    vendor_id: str
    name: str
    city: str
    distance_km: float  # rounded to 0.1 km
    backlog: int
    paused: bool
    services: tuple[str, ...] = ()


@dataclass
class RouteSuggestion:
    job_id: str
    service_type: str
    pickup_address: str
    urgency: str
    suggestions: list[VendorSuggestion] = field(default_factory=list)


def rank_vendors(
    pickup: GeoPoint,
    vendors: Iterable[VendorRecord],
    backlog: Mapping[str, int],
    *,
    top_n: int = 3,
) -> list[VendorSuggestion]:
    ranked: list[tuple[float, int, VendorRecord]] = []
    for vendor in vendors:
        if not vendor.active or vendor.location is None:
            continue
        distance = distance_between(vendor.location, pickup)
        if not math.isfinite(distance):
            continue
        ranked.append((distance, backlog.get(vendor.id, 0), vendor))

    ranked.sort(key=lambda item: (item[0], item[1]))
    return [
        VendorSuggestion(
            vendor_id=vendor.id,
            name=vendor.name,
            city=vendor.city or "",
            distance_km=round(distance, 1),
            backlog=load,
            paused=vendor.updates_paused,
            services=tuple(vendor.services),
        )
        for distance, load, vendor in ranked[: max(top_n, 0)]
    ]


def suggest_vendors(
    jobs: Iterable[Job],
    vendors: Iterable[VendorRecord],
    backlog: Mapping[str, int],
    *,
    top_n: int = 3,
) -> list[RouteSuggestion]:
    """One entry per Unassigned job that has pickup coordinates."""
    vendor_list = list(vendors)
    results: list[RouteSuggestion] = []
    for job in jobs:
        if job.status != JobStatus.UNASSIGNED.value or job.pickup is None:
            continue
        results.append(
            RouteSuggestion(
                job_id=job.id,
                service_type=job.service_type,
                pickup_address=job.pickup_address,
                urgency=job.urgency,
                suggestions=rank_vendors(job.pickup, vendor_list, backlog, top_n=top_n),
            )
        )
    return results
