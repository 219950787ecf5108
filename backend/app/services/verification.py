"""Punch verification: network presence OR geofence.

Two independent channels, either of which is sufficient:

1. Network presence - the caller's address must be on the warehouse egress
   allowlist. An empty allowlist fails closed. An operator flag turns the
   channel into DEV_BYPASS (recorded distinctly from PASS), and a per-user
   bypass list upgrades FAIL to DEV_BYPASS for designated test identities.
2. Geofence - haversine distance from the reported coordinate to the site
   center must be within the radius, and the reported accuracy (when
   present) must be at most the accuracy ceiling. No coordinate means the
   channel is unavailable rather than failed.

When both channels fail, the most specific reason wins:
no coordinate > low accuracy > out of range > generic network denial.
"""

import math
from dataclasses import dataclass

from app.core.config import Settings
from app.services.timeclock_types import (
    BlockReason,
    GeofenceStatus,
    VerificationMethod,
    WifiAllowlistStatus,
)

# Mean Earth radius used by the haversine formula
EARTH_RADIUS_METERS = 6_371_000.0

METERS_PER_MILE = 1609.344

# Default accuracy ceiling for a usable GPS fix
DEFAULT_MAX_ACCURACY_METERS = 200.0


# =============================================================================
# Types
# =============================================================================


@dataclass(frozen=True)
class Coordinate:
    """Reported device location.

    Attributes:
        lat: Latitude in degrees.
        lng: Longitude in degrees.
        accuracy_meters: Reported accuracy radius, if the device gave one.
    """

    lat: float
    lng: float
    accuracy_meters: float | None = None

    @property
    def is_valid(self) -> bool:
        """Finite and within WGS84 bounds."""
        return (
            math.isfinite(self.lat)
            and math.isfinite(self.lng)
            and -90.0 <= self.lat <= 90.0
            and -180.0 <= self.lng <= 180.0
            and (
                self.accuracy_meters is None
                or (math.isfinite(self.accuracy_meters) and self.accuracy_meters >= 0)
            )
        )


@dataclass(frozen=True)
class GeofenceSite:
    """The single fixed site per deployment."""

    lat: float
    lng: float
    radius_meters: float
    address: str = ""


@dataclass(frozen=True)
class VerificationConfig:
    """Immutable verification policy, built once per evaluator.

    Attributes:
        allowed_ips: Egress addresses that count as on-site network.
        allowlist_disabled: Operator override; network channel reports
            DEV_BYPASS for everyone.
        bypass_user_ids: Users whose network FAIL becomes DEV_BYPASS.
        site: Geofence center and radius.
        max_accuracy_meters: Worst accuracy accepted for a GPS fix.
    """

    allowed_ips: frozenset[str]
    allowlist_disabled: bool
    bypass_user_ids: frozenset[str]
    site: GeofenceSite
    max_accuracy_meters: float = DEFAULT_MAX_ACCURACY_METERS

    @classmethod
    def from_settings(cls, config: Settings) -> "VerificationConfig":
        """Snapshot the verification policy from application settings."""
        return cls(
            allowed_ips=config.allowed_egress_ips,
            allowlist_disabled=config.timeclock_wifi_allowlist_disabled,
            bypass_user_ids=config.wifi_bypass_user_ids,
            site=GeofenceSite(
                lat=config.timeclock_site_lat,
                lng=config.timeclock_site_lng,
                radius_meters=config.timeclock_site_radius_meters,
                address=config.timeclock_site_address,
            ),
            max_accuracy_meters=config.timeclock_max_accuracy_meters,
        )


@dataclass(frozen=True)
class GeofenceResult:
    """Geofence channel outcome.

    Attributes:
        status: PASS, FAIL, or UNAVAILABLE (no coordinate).
        distance_meters: Distance to site center (None if not computed).
        in_range: distance <= radius (None if not computed).
        accuracy_ok: Accuracy absent or within the ceiling (None if no fix).
    """

    status: GeofenceStatus
    distance_meters: float | None = None
    in_range: bool | None = None
    accuracy_ok: bool | None = None


@dataclass(frozen=True)
class VerificationResult:
    """Combined verdict of both channels.

    Attributes:
        ip_address: Resolved caller address.
        wifi_status: Network channel outcome.
        geofence: Geofence channel outcome.
        method: Which channel(s) passed.
        failure_reason: Most specific reason when neither channel passed.
    """

    ip_address: str | None
    wifi_status: WifiAllowlistStatus
    geofence: GeofenceResult
    method: VerificationMethod
    failure_reason: BlockReason | None

    @property
    def passed(self) -> bool:
        """True if at least one channel verified the punch."""
        return self.failure_reason is None

    @property
    def wifi_verified(self) -> bool:
        return self.wifi_status != WifiAllowlistStatus.FAIL

    @property
    def location_verified(self) -> bool:
        return self.geofence.status == GeofenceStatus.PASS


# =============================================================================
# Helpers
# =============================================================================


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))


def resolve_client_ip(forwarded_for: str | None, peer_address: str | None) -> str | None:
    """Resolve the caller's address.

    Prefers the first hop of an X-Forwarded-For chain (the deployment sits
    behind a trusted proxy), falling back to the socket peer.

    Args:
        forwarded_for: Raw X-Forwarded-For header value.
        peer_address: Socket peer host.

    Returns:
        Address string, or None if neither source has one.
    """
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    peer = (peer_address or "").strip()
    return peer or None


# =============================================================================
# Evaluator
# =============================================================================


class VerificationEvaluator:
    """Evaluates both verification channels for a punch.

    Args:
        config: Immutable verification policy.
    """

    def __init__(self, config: VerificationConfig) -> None:
        self.config = config

    def evaluate_network(
        self, ip_address: str | None, user_id: str
    ) -> WifiAllowlistStatus:
        """Network-presence channel.

        Args:
            ip_address: Resolved caller address.
            user_id: Caller id, checked against the bypass list.

        Returns:
            PASS, FAIL, or DEV_BYPASS.
        """
        if self.config.allowlist_disabled:
            return WifiAllowlistStatus.DEV_BYPASS

        if ip_address and ip_address in self.config.allowed_ips:
            return WifiAllowlistStatus.PASS

        if user_id in self.config.bypass_user_ids:
            return WifiAllowlistStatus.DEV_BYPASS
        return WifiAllowlistStatus.FAIL

    def evaluate_geofence(self, coordinate: Coordinate | None) -> GeofenceResult:
        """Geofence channel.

        Args:
            coordinate: Reported location, if any.

        Returns:
            GeofenceResult with distance and range details.
        """
        if coordinate is None:
            return GeofenceResult(status=GeofenceStatus.UNAVAILABLE)
        if not coordinate.is_valid:
            return GeofenceResult(status=GeofenceStatus.FAIL)

        site = self.config.site
        distance = haversine_meters(coordinate.lat, coordinate.lng, site.lat, site.lng)
        in_range = distance <= site.radius_meters
        accuracy_ok = (
            coordinate.accuracy_meters is None
            or coordinate.accuracy_meters <= self.config.max_accuracy_meters
        )
        return GeofenceResult(
            status=GeofenceStatus.PASS if in_range and accuracy_ok else GeofenceStatus.FAIL,
            distance_meters=distance,
            in_range=in_range,
            accuracy_ok=accuracy_ok,
        )

    def evaluate(
        self,
        *,
        user_id: str,
        ip_address: str | None,
        coordinate: Coordinate | None,
    ) -> VerificationResult:
        """Evaluate both channels and combine them with OR.

        Args:
            user_id: Caller id.
            ip_address: Resolved caller address.
            coordinate: Reported location, if any.

        Returns:
            VerificationResult; failure_reason is None when verified.
        """
        wifi_status = self.evaluate_network(ip_address, user_id)
        geofence = self.evaluate_geofence(coordinate)

        wifi_ok = wifi_status != WifiAllowlistStatus.FAIL
        location_ok = geofence.status == GeofenceStatus.PASS

        if wifi_ok and location_ok:
            method = VerificationMethod.BOTH
        elif wifi_ok:
            method = VerificationMethod.WIFI
        elif location_ok:
            method = VerificationMethod.LOCATION
        else:
            method = VerificationMethod.NONE

        failure_reason = None
        if method == VerificationMethod.NONE:
            failure_reason = _most_specific_failure(geofence)

        return VerificationResult(
            ip_address=ip_address,
            wifi_status=wifi_status,
            geofence=geofence,
            method=method,
            failure_reason=failure_reason,
        )


def _most_specific_failure(geofence: GeofenceResult) -> BlockReason:
    if geofence.status == GeofenceStatus.UNAVAILABLE:
        return BlockReason.LOCATION_UNAVAILABLE
    if geofence.accuracy_ok is False:
        return BlockReason.ACCURACY_LOW
    if geofence.in_range is False:
        return BlockReason.OUT_OF_RANGE
    return BlockReason.NOT_ON_WAREHOUSE_WIFI
