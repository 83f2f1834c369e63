"""federation_sync.sync

Plan and apply canonical store writes from reconciled members.

Processing order for every mode:
  1.  List store records under "acc/"
  2.  Fetch + reconcile (or scrape / look up) everything needed
  3.  Plan: diff each record against the fresh data, collect WriteOps
  4.  Apply: compare-and-set every op inside one store transaction

Nothing is written until the whole plan exists, and one stale record
rolls back the entire apply. Record-level problems found while planning
(ambiguous or conflicting first-time matches) go to the rejects file and
the rest of the plan proceeds.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace

from federation_sync.geo import City, find_insee
from federation_sync.models import (
    CompetitionResult,
    MedicalCertificateStatus,
    Member,
    Metadata,
)
from federation_sync.normalize import normalize_name
from federation_sync.shared import (
    AlreadyLinkedError,
    AmbiguousMatchError,
    RecordError,
    RejectWriter,
    RunCounters,
)
from federation_sync.store import UserRecord, UserStore

log = logging.getLogger(__name__)

OP_UPDATE_METADATA = "update_metadata"
OP_LINK = "link"
OP_CREATE = "create"
OP_COMPETITION_RESULTS = "competition_results"
OP_INSEE = "insee"


@dataclass(frozen=True)
class WriteOp:
    kind: str
    record: UserRecord
    expected_version: int


# ---------------------------------------------------------------------------
# Diffing
# ---------------------------------------------------------------------------

def material_fields(metadata: Metadata | None) -> tuple:
    """The fields whose change warrants a store write."""
    if metadata is None:
        return ()
    return (
        metadata.myffme_user_id,
        metadata.license_number,
        metadata.gender,
        metadata.insee,
        metadata.city,
        metadata.zip_code,
        metadata.license_type,
        metadata.medical_certificate_status,
        metadata.latest_license_season,
        metadata.latest_structure.id if metadata.latest_structure else None,
        len(metadata.competition_results) if metadata.competition_results is not None else None,
    )


def merge_metadata(stored: Metadata | None, fresh: Metadata) -> Metadata:
    """Fresh platform facts, keeping what only the store knows.

    Competition results are scraped separately and an INSEE code may have
    been backfilled locally, so both survive when the platform has none.
    """
    if stored is None:
        return fresh
    return replace(
        fresh,
        insee=fresh.insee if fresh.insee is not None else stored.insee,
        competition_results=stored.competition_results,
    )


def _index_members(members: Iterable[Member]) -> dict[str, Member]:
    return {
        m.metadata.myffme_user_id: m
        for m in members
        if m.metadata.myffme_user_id is not None
    }


def _record(
    exc: RecordError,
    rejects: RejectWriter | None,
    counters: RunCounters | None,
) -> None:
    if rejects is None:
        raise exc
    log.warning("rejecting %s: %s", exc.external_id, exc)
    rejects.reject(exc)
    if counters is not None:
        counters.members_rejected += 1
        if isinstance(exc, AmbiguousMatchError):
            counters.ambiguous_matches += 1
        elif isinstance(exc, AlreadyLinkedError):
            counters.already_linked += 1


# ---------------------------------------------------------------------------
# update_metadata
# ---------------------------------------------------------------------------

def plan_metadata_updates(
    records: Iterable[UserRecord],
    members: Iterable[Member],
    counters: RunCounters | None = None,
) -> list[WriteOp]:
    """Updates for linked records whose material fields changed."""
    by_id = _index_members(members)
    ops: list[WriteOp] = []
    for record in records:
        stored = record.parsed_metadata()
        if stored is None or not stored.is_linked:
            continue
        member = by_id.get(stored.myffme_user_id)
        if member is None:
            continue
        merged = merge_metadata(stored, member.metadata)
        if material_fields(merged) == material_fields(stored):
            if counters is not None:
                counters.records_unchanged += 1
            continue
        ops.append(WriteOp(OP_UPDATE_METADATA, record.with_metadata(merged), record.version))
        if counters is not None:
            counters.metadata_updated += 1
    return ops


# ---------------------------------------------------------------------------
# add_missing
# ---------------------------------------------------------------------------

def _match_key(first_name: str, last_name: str, dob: int) -> tuple[int, str, str]:
    return (dob, normalize_name(first_name) or "", normalize_name(last_name) or "")


def plan_new_members(
    records: Iterable[UserRecord],
    members: Iterable[Member],
    rejects: RejectWriter | None = None,
    counters: RunCounters | None = None,
) -> list[WriteOp]:
    """Link or create a store record for every member not linked yet.

    A member is matched on date of birth plus normalized first and last
    name. No match creates a record; one unlinked match is linked; one
    match already linked to another platform user raises
    AlreadyLinkedError; several matches raise AmbiguousMatchError.
    """
    records = list(records)
    linked: set[str] = set()
    by_key: dict[tuple[int, str, str], list[UserRecord]] = {}
    for record in records:
        stored = record.parsed_metadata()
        if stored is not None and stored.is_linked:
            linked.add(stored.myffme_user_id)
        key = (record.date_of_birth, record.normalized_first_name, record.normalized_last_name)
        by_key.setdefault(key, []).append(record)

    claimed: set[str] = set()
    ops: list[WriteOp] = []
    for member in members:
        external_id = member.metadata.myffme_user_id
        if not member.metadata.is_linked or external_id in linked:
            continue
        context = {
            "first_name": member.first_name,
            "last_name": member.last_name,
            "external_id": external_id,
        }
        matches = by_key.get(_match_key(member.first_name, member.last_name, member.dob), [])
        try:
            if len(matches) > 1:
                raise AmbiguousMatchError(
                    f"multiple users found ({len(matches)} records)", **context
                )
            if len(matches) == 1:
                record = matches[0]
                stored = record.parsed_metadata()
                if record.key in claimed or (stored is not None and stored.is_linked):
                    raise AlreadyLinkedError(
                        f"user already exists ({record.key})", **context
                    )
                claimed.add(record.key)
                ops.append(WriteOp(
                    OP_LINK,
                    record.with_metadata(merge_metadata(stored, member.metadata)),
                    record.version,
                ))
                if counters is not None:
                    counters.users_linked += 1
                continue
        except RecordError as exc:
            _record(exc, rejects, counters)
            continue

        ops.append(WriteOp(
            OP_CREATE,
            UserRecord.new(
                first_name=member.first_name,
                last_name=member.last_name,
                date_of_birth=member.dob,
                email=member.email,
                metadata=member.metadata,
            ),
            0,
        ))
        if counters is not None:
            counters.users_created += 1
    return ops


# ---------------------------------------------------------------------------
# competition_results
# ---------------------------------------------------------------------------

def competition_candidates(
    records: Iterable[UserRecord],
    season: int,
) -> list[tuple[UserRecord, Metadata]]:
    """Records licensed this season with competition status and a license number."""
    out: list[tuple[UserRecord, Metadata]] = []
    for record in records:
        md = record.parsed_metadata()
        if (
            md is not None
            and md.latest_license_season == season
            and md.medical_certificate_status == MedicalCertificateStatus.Competition
            and md.license_number is not None
        ):
            out.append((record, md))
    return out


def plan_competition_results(
    candidates: Iterable[tuple[UserRecord, Metadata]],
    results_by_license: Mapping[int, list[CompetitionResult]],
) -> list[WriteOp]:
    """Store newly scraped results when their count changed.

    An empty scrape never wipes stored results.
    """
    ops: list[WriteOp] = []
    for record, md in candidates:
        results = results_by_license.get(md.license_number)
        if not results:
            continue
        if md.competition_results is not None and len(md.competition_results) == len(results):
            continue
        updated = replace(md, competition_results=tuple(results))
        ops.append(WriteOp(OP_COMPETITION_RESULTS, record.with_metadata(updated), record.version))
    return ops


# ---------------------------------------------------------------------------
# insee_backfill
# ---------------------------------------------------------------------------

def plan_insee_backfill(
    records: Iterable[UserRecord],
    lookup: Callable[[str], list[City]],
    counters: RunCounters | None = None,
) -> list[WriteOp]:
    """Fill a missing INSEE code from the record's city and postal code."""
    cache: dict[str, list[City]] = {}
    ops: list[WriteOp] = []
    for record in records:
        md = record.parsed_metadata()
        if md is None or md.insee is not None or not md.city or not md.zip_code:
            continue
        if md.zip_code not in cache:
            cache[md.zip_code] = lookup(md.zip_code)
            if counters is not None:
                counters.cities_looked_up += 1
        insee = find_insee(cache[md.zip_code], md.city)
        if insee is None:
            log.warning(
                "no INSEE code for %s %s (%s %s)",
                record.first_name, record.last_name, md.zip_code, md.city,
            )
            if counters is not None:
                counters.insee_unresolved += 1
                counters.warnings.append(
                    f"no INSEE code for {record.key} ({md.zip_code} {md.city})"
                )
            continue
        ops.append(WriteOp(OP_INSEE, record.with_metadata(replace(md, insee=insee)), record.version))
        if counters is not None:
            counters.insee_filled += 1
    return ops


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

def apply_plan(store: UserStore, ops: list[WriteOp], dry_run: bool = False) -> list[UserRecord]:
    """Compare-and-set every op in one transaction.

    StaleRecordError from any op rolls back all of them. With dry_run the
    writes are executed and then rolled back.
    """
    written: list[UserRecord] = []
    with store.transaction(dry_run=dry_run):
        for op in ops:
            written.append(store.compare_and_set(op.record, op.expected_version))
    log.info("%s %d store write(s)", "rolled back" if dry_run else "committed", len(written))
    return written
