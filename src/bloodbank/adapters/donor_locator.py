"""Finds available donors of acceptable blood types near a point."""

import abc
import logging
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from bloodbank.adapters import orm
from bloodbank.domain import actors
from bloodbank.domain.users import DonorSummary

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class GeoPoint:
    longitude: float
    latitude: float


class DonorLocatorError(Exception):
    pass


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    d_lat = math.radians(b.latitude - a.latitude)
    d_lon = math.radians(b.longitude - a.longitude)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.latitude)) * math.cos(math.radians(b.latitude)) * math.sin(d_lon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def bounding_box(center: GeoPoint, radius_km: float):
    """Lat/lon box enclosing the search circle, used to narrow the SQL query."""
    d_lat = math.degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = math.cos(math.radians(center.latitude))
    ratio = math.sin(radius_km / EARTH_RADIUS_KM) / cos_lat if cos_lat > 1e-12 else 2.0
    # a circle reaching over the pole spans every longitude
    d_lon = 180.0 if ratio >= 1.0 else math.degrees(math.asin(ratio))
    return (
        max(-90.0, center.latitude - d_lat),
        min(90.0, center.latitude + d_lat),
        center.longitude - d_lon,
        center.longitude + d_lon,
    )


class AbstractDonorLocator(abc.ABC):
    @abc.abstractmethod
    def find_nearby(
        self,
        point: GeoPoint,
        radius_meters: int,
        blood_types: Iterable[str],
        limit: Optional[int] = None,
        exclude_ids: Iterable[str] = (),
    ) -> List[DonorSummary]:
        """Available, active donors within the radius, nearest first."""
        raise NotImplementedError


class SqlAlchemyDonorLocator(AbstractDonorLocator):
    def __init__(self, session):
        self.session = session

    def find_nearby(self, point, radius_meters, blood_types, limit=None, exclude_ids=()):
        blood_types = sorted(set(blood_types))
        if not blood_types:
            return []
        radius_km = radius_meters / 1000.0
        min_lat, max_lat, min_lon, max_lon = bounding_box(point, radius_km)

        users = orm.user_accounts
        stmt = (
            select(users.c.user_id, users.c.name, users.c.phone, users.c.blood_type, users.c.latitude, users.c.longitude)
            .where(users.c.role == actors.DONOR)
            .where(users.c.is_active.is_(True))
            .where(users.c.is_available.is_(True))
            .where(users.c.blood_type.in_(blood_types))
            .where(users.c.latitude.between(min_lat, max_lat))
        )
        exclude_ids = set(exclude_ids)
        if exclude_ids:
            stmt = stmt.where(users.c.user_id.not_in(exclude_ids))
        # the box may wrap around the antimeridian, in which case filter longitude in Python
        if -180.0 <= min_lon and max_lon <= 180.0:
            stmt = stmt.where(users.c.longitude.between(min_lon, max_lon))

        try:
            rows = self.session.execute(stmt).all()
        except SQLAlchemyError as e:
            raise DonorLocatorError(f"Donor lookup failed: {e}") from e

        candidates = []
        for row in rows:
            if row.longitude is None:
                continue
            distance = haversine_km(point, GeoPoint(longitude=row.longitude, latitude=row.latitude))
            if distance > radius_km:
                continue
            candidates.append(
                DonorSummary(
                    donor_id=row.user_id,
                    name=row.name,
                    phone=row.phone,
                    blood_type=row.blood_type,
                    distance_km=round(distance, 2),
                )
            )

        candidates.sort(key=lambda d: (d.distance_km, d.donor_id))
        logger.debug(f"Found {len(candidates)} donors within {radius_km} km of {point}")
        return candidates[:limit] if limit is not None else candidates
