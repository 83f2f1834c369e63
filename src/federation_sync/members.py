"""federation_sync.members

Member lookups over a MemberDataSource.

The reconciliation engine is independent of the platform API generation:
an adapter only has to return typed rows keyed by user id. Every fact set
for a population is fetched before anything is reconciled, and the first
source failure aborts the whole lookup so that a sync never acts on a
partial view.
"""

from __future__ import annotations

import logging
from typing import Protocol

from federation_sync.models import Address, Document, License, Member, RawUser, Structure
from federation_sync.normalize import normalize_name
from federation_sync.reconcile import reconcile
from federation_sync.season import season as current_season
from federation_sync.shared import RejectWriter, RunCounters

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SourceError(Exception):
    """Raised when a fact source cannot be fetched or decoded."""


# ---------------------------------------------------------------------------
# Data source protocol
# ---------------------------------------------------------------------------

class MemberDataSource(Protocol):
    def users_by_ids(self, ids: list[str]) -> list[RawUser]: ...

    def users_by_structure(self, structure_id: int) -> list[RawUser]: ...

    def users_by_dob(self, dob: int) -> list[RawUser]: ...

    def users_by_license_numbers(self, license_numbers: list[int]) -> list[RawUser]: ...

    def licenses(self, user_ids: list[str], season: int) -> dict[str, License]: ...

    def addresses(self, user_ids: list[str]) -> dict[str, Address]: ...

    def medical_certificates(self, user_ids: list[str], season: int) -> dict[str, Document]: ...

    def health_questionnaires(self, user_ids: list[str], season: int) -> dict[str, Document]: ...

    def structures(self, structure_ids: list[int]) -> dict[int, Structure]: ...


# ---------------------------------------------------------------------------
# Fetch + reconcile
# ---------------------------------------------------------------------------

def fetch_members(
    source: MemberDataSource,
    users: list[RawUser],
    season: int,
    rejects: RejectWriter | None = None,
    counters: RunCounters | None = None,
) -> list[Member]:
    """Fetch every fact set for ``users`` and reconcile them.

    SourceError from any fetch propagates before reconciliation starts.
    """
    if not users:
        return []
    user_ids = [u.id for u in users]
    licenses = source.licenses(user_ids, season)
    addresses = source.addresses(user_ids)
    certificates = source.medical_certificates(user_ids, season)
    questionnaires = source.health_questionnaires(user_ids, season)
    structure_ids = sorted({lic.structure_id for lic in licenses.values()})
    structures = source.structures(structure_ids) if structure_ids else {}
    log.info(
        "fetched %d users, %d licenses, %d structures for season %d",
        len(users), len(licenses), len(structures), season,
    )
    return reconcile(
        users,
        licenses,
        addresses,
        certificates,
        questionnaires,
        structures,
        season=season,
        rejects=rejects,
        counters=counters,
    )


def members_by_ids(
    source: MemberDataSource,
    ids: list[str],
    season: int | None = None,
    rejects: RejectWriter | None = None,
    counters: RunCounters | None = None,
) -> list[Member]:
    season = season if season is not None else current_season()
    return fetch_members(source, source.users_by_ids(ids), season, rejects, counters)


def members_by_structure(
    source: MemberDataSource,
    structure_id: int,
    season: int | None = None,
    rejects: RejectWriter | None = None,
    counters: RunCounters | None = None,
) -> list[Member]:
    season = season if season is not None else current_season()
    users = source.users_by_structure(structure_id)
    return fetch_members(source, users, season, rejects, counters)


def member_by_license_number(
    source: MemberDataSource,
    license_number: int,
    season: int | None = None,
    rejects: RejectWriter | None = None,
    counters: RunCounters | None = None,
) -> Member | None:
    """Return the member holding license_number, or None unless exactly one matches."""
    season = season if season is not None else current_season()
    users = source.users_by_license_numbers([license_number])
    members = fetch_members(source, users, season, rejects, counters)
    if len(members) != 1:
        return None
    return members[0]


def members_by_name_and_dob(
    source: MemberDataSource,
    first_name: str,
    last_name: str,
    dob: int,
    season: int | None = None,
    rejects: RejectWriter | None = None,
    counters: RunCounters | None = None,
) -> list[Member]:
    """Members born on ``dob``, narrowed by name when more than one is found.

    Narrowing keeps the members whose normalized first name matches (if
    any do), then likewise on the last name. An empty narrowing step
    leaves the list unchanged.
    """
    season = season if season is not None else current_season()
    members = fetch_members(source, source.users_by_dob(dob), season, rejects, counters)
    if len(members) <= 1:
        return members
    first_norm = normalize_name(first_name)
    last_norm = normalize_name(last_name)
    by_first = [m for m in members if normalize_name(m.first_name) == first_norm]
    if by_first:
        members = by_first
    by_last = [m for m in members if normalize_name(m.last_name) == last_norm]
    if by_last:
        members = by_last
    return members
