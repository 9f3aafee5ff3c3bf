"""
Geofence validation service.
Uses Haversine formula for circles and ray casting for polygons.
"""
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List, Dict, Tuple, Any

import structlog
from sqlalchemy.orm import Session

from ..models.models import Project
from .audit import log_audit

logger = structlog.get_logger(__name__)

# Earth radius in meters
EARTH_RADIUS_M = 6371000


class GeofenceType(str, Enum):
    CIRCLE = "CIRCLE"
    POLYGON = "POLYGON"
    NONE = "NONE"


@dataclass
class GeofenceCheck:
    inside: bool
    kind: GeofenceType
    distance_meters: Optional[float] = None
    diagnostic: Optional[str] = None


class GeofenceViolation(Exception):
    """Reported location lies outside the project's geofence."""

    def __init__(self, geofence_type: GeofenceType, distance_meters: Optional[float]):
        self.geofence_type = geofence_type
        self.distance_meters = distance_meters
        super().__init__("Location is outside the project geofence")

    def to_dict(self) -> Dict:
        return {
            "code": "OUTSIDE_PROJECT_GEOFENCE",
            "message": str(self),
            "geofence_type": self.geofence_type.value,
            "distance_meters": round(self.distance_meters) if self.distance_meters is not None else None,
        }


class InvalidCoordinates(ValueError):
    pass


class InvalidGeometry(ValueError):
    pass


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    # Convert to radians
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    # Haversine formula
    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def point_in_polygon(lat: float, lng: float, ring: List[Tuple[float, float]]) -> bool:
    """
    Ray casting test. `ring` holds (lng, lat) vertices; the closing edge is implicit.
    """
    inside = False
    n = len(ring)
    j = n - 1
    for i in range(n):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < x_cross:
                inside = not inside
        j = i
    return inside


def normalize_geofence(geofence: Optional[Dict]) -> Optional[Dict]:
    """
    Map stored geometry to the internal {type: CIRCLE|POLYGON, ...} shape.

    GeoJSON Feature / Polygon objects become POLYGON using their outer ring.
    Anything unrecognised is returned unchanged for `validate` to reject.
    """
    if not isinstance(geofence, dict):
        return geofence
    kind = str(geofence.get("type", "")).upper()
    if kind == "FEATURE":
        return normalize_geofence(geofence.get("geometry"))
    if kind == "POLYGON":
        coords = geofence.get("coordinates")
        # GeoJSON nests rings: [[[lng, lat], ...]]
        if (
            isinstance(coords, list) and coords
            and isinstance(coords[0], list) and coords[0]
            and isinstance(coords[0][0], list)
        ):
            coords = coords[0]
        return {"type": GeofenceType.POLYGON.value, "coordinates": coords}
    if kind == "CIRCLE":
        return {
            "type": GeofenceType.CIRCLE.value,
            "center": geofence.get("center"),
            "radius_meters": geofence.get("radius_meters"),
        }
    return geofence


def _parse_ring(coords: Any) -> Tuple[Optional[List[Tuple[float, float]]], Optional[str]]:
    if not isinstance(coords, list):
        return None, "polygon coordinates missing"
    ring = []
    for vertex in coords:
        if (
            not isinstance(vertex, (list, tuple)) or len(vertex) < 2
            or not _is_number(vertex[0]) or not _is_number(vertex[1])
        ):
            return None, "polygon vertex is not a [lng, lat] pair"
        ring.append((float(vertex[0]), float(vertex[1])))
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring = ring[:-1]
    if len(ring) < 3:
        return None, "polygon needs at least 3 vertices"
    return ring, None


def _parse_circle(geofence: Dict) -> Tuple[Optional[Tuple[float, float, float]], Optional[str]]:
    center = geofence.get("center")
    radius = geofence.get("radius_meters")
    if not isinstance(center, dict) or not _is_number(center.get("lat")) or not _is_number(center.get("lng")):
        return None, "circle center missing or not numeric"
    if not _is_number(radius) or radius < 0:
        return None, "circle radius missing or not numeric"
    return (float(center["lat"]), float(center["lng"]), float(radius)), None


def validate(geofence: Optional[Dict], lat: float, lng: float) -> GeofenceCheck:
    """
    Check a coordinate against stored geometry.

    Missing, malformed or unsupported geometry never blocks: the result is
    inside with kind NONE and a diagnostic describing what was wrong.
    """
    if not geofence:
        return GeofenceCheck(inside=True, kind=GeofenceType.NONE, diagnostic="no geofence configured")

    geometry = normalize_geofence(geofence)
    if not isinstance(geometry, dict):
        return GeofenceCheck(inside=True, kind=GeofenceType.NONE, diagnostic="geofence is not an object")

    kind = geometry.get("type")
    if kind == GeofenceType.CIRCLE.value:
        circle, problem = _parse_circle(geometry)
        if problem:
            return GeofenceCheck(inside=True, kind=GeofenceType.NONE, diagnostic=problem)
        center_lat, center_lng, radius = circle
        distance = haversine_distance(lat, lng, center_lat, center_lng)
        return GeofenceCheck(inside=distance <= radius, kind=GeofenceType.CIRCLE, distance_meters=distance)

    if kind == GeofenceType.POLYGON.value:
        ring, problem = _parse_ring(geometry.get("coordinates"))
        if problem:
            return GeofenceCheck(inside=True, kind=GeofenceType.NONE, diagnostic=problem)
        if point_in_polygon(lat, lng, ring):
            return GeofenceCheck(inside=True, kind=GeofenceType.POLYGON, distance_meters=0.0)
        nearest = min(haversine_distance(lat, lng, v_lat, v_lng) for v_lng, v_lat in ring)
        return GeofenceCheck(inside=False, kind=GeofenceType.POLYGON, distance_meters=nearest)

    return GeofenceCheck(inside=True, kind=GeofenceType.NONE, diagnostic=f"unsupported geofence type: {kind}")


def validate_geometry(geofence: Dict) -> Dict:
    """
    Strict check used when geometry is written.

    Returns:
        Normalized geometry

    Raises:
        InvalidGeometry: when the geometry would be ignored on read
    """
    geometry = normalize_geofence(geofence)
    if not isinstance(geometry, dict):
        raise InvalidGeometry("geofence must be an object")
    kind = geometry.get("type")
    if kind == GeofenceType.CIRCLE.value:
        _, problem = _parse_circle(geometry)
    elif kind == GeofenceType.POLYGON.value:
        _, problem = _parse_ring(geometry.get("coordinates"))
    else:
        problem = f"unsupported geofence type: {geofence.get('type')}"
    if problem:
        raise InvalidGeometry(problem)
    return geometry


def check_coordinates(lat: Any, lng: Any) -> Tuple[float, float]:
    if not _is_number(lat) or not _is_number(lng):
        raise InvalidCoordinates("latitude and longitude must be numbers")
    if not -90 <= lat <= 90:
        raise InvalidCoordinates("latitude must be between -90 and 90")
    if not -180 <= lng <= 180:
        raise InvalidCoordinates("longitude must be between -180 and 180")
    return float(lat), float(lng)


def validate_user_inside_project_geofence(
    db: Session,
    project: Project,
    actor_id: Any,
    actor_role: Optional[str],
    lat: Any,
    lng: Any,
) -> GeofenceCheck:
    """
    Gate a field action on the project's geofence.

    An outside result is recorded as a SECURITY audit entry (committed on its
    own, before the caller mutates anything) and raised as GeofenceViolation.

    Raises:
        InvalidCoordinates: latitude/longitude missing or out of range
        GeofenceViolation: point outside the geofence
    """
    lat, lng = check_coordinates(lat, lng)
    result = validate(project.geofence, lat, lng)

    if result.diagnostic and project.geofence:
        logger.warning(
            "geofence_degraded",
            project_id=str(project.id),
            diagnostic=result.diagnostic,
        )

    if result.inside:
        return result

    distance = round(result.distance_meters) if result.distance_meters is not None else None
    log_audit(
        db,
        entity_type="GEOFENCE_VALIDATION",
        entity_id=project.id,
        category="SECURITY",
        action="ACCESS_DENIED",
        before=None,
        after={
            "reason": "OUTSIDE_PROJECT_GEOFENCE",
            "geofence_type": result.kind.value,
            "user_location": {"latitude": lat, "longitude": lng},
            "distance_meters": distance,
        },
        actor_id=actor_id,
        actor_role=actor_role,
        project_id=project.id,
        organization_id=project.org_id,
        commit=True,
    )
    logger.info(
        "geofence_access_denied",
        project_id=str(project.id),
        actor_id=str(actor_id) if actor_id else None,
        geofence_type=result.kind.value,
        distance_meters=distance,
    )
    raise GeofenceViolation(result.kind, result.distance_meters)
