"""Ownership routing: which partition, zone and cache namespace a source uses."""

from ..catalog.ids import CURRENT_USER, CompositeID, ZoneID
from ..catalog.models import Source
from ..catalog.records import Scope


class ScopeResolver:
    """Routes every remote and cache call for a source.

    Decisions depend only on Source.is_personal: personal sources live in
    the caller's own partition, everything else is a collaborator view of
    another owner's zone.
    """

    def __init__(self, personal_zone: str = "PersonalSources"):
        self.personal_zone = personal_zone

    @property
    def personal_zone_id(self) -> ZoneID:
        return ZoneID(owner=CURRENT_USER, name=self.personal_zone)

    def scope_for(self, source: Source) -> Scope:
        return Scope.OWNED if source.is_personal else Scope.SHARED

    def zone_for(self, source: Source) -> ZoneID:
        """Zone holding the source's records."""
        return source.id.zone_id

    def mint_id(self, source: Source) -> CompositeID:
        """Fresh id for a new record belonging to source."""
        return CompositeID.mint(self.zone_for(source))

    def mint_source_id(self) -> CompositeID:
        """Fresh id for a new personal source."""
        return CompositeID.mint(self.personal_zone_id)

    def cache_owner(self, source: Source) -> CompositeID:
        """Snapshot namespace for the source's records."""
        return source.id

    def is_owner(self, source: Source) -> bool:
        return self.scope_for(source) == Scope.OWNED
