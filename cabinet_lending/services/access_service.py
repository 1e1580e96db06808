from __future__ import annotations

from dataclasses import dataclass, field

from cabinet_lending.services.errors import UnauthorizedError


@dataclass(frozen=True)
class StationAccess:
    """Precomputed approve-capability handed in by the auth layer."""

    actor_name: str
    station_ids: frozenset[int] = field(default_factory=frozenset)
    all_stations: bool = False

    def may_approve(self, station_id: int) -> bool:
        if self.all_stations:
            return True
        return int(station_id) in self.station_ids


def parse_station_access(actor_name: str | None, raw_station_ids: str | None) -> StationAccess:
    name = (actor_name or "").strip()
    raw = (raw_station_ids or "").strip()
    if raw == "*":
        return StationAccess(actor_name=name, all_stations=True)
    station_ids: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            station_ids.add(int(part))
        except ValueError:
            continue
    return StationAccess(actor_name=name, station_ids=frozenset(station_ids))


def require_station_access(access: StationAccess, station_id: int) -> None:
    if not access.may_approve(station_id):
        raise UnauthorizedError(f"Not allowed to manage requests for station {station_id}.")
