"""federation_sync.reconcile

Merge per-user platform facts into one Member per user.

Every input except ``users`` and ``structures`` is keyed by platform user
id and already narrowed upstream to one row per user (latest license and
documents at or before the season, most recently modified address).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from federation_sync.medical import medical_certificate_status
from federation_sync.models import (
    NO_CERTIFICATE,
    Address,
    Document,
    License,
    LicenseType,
    Member,
    Metadata,
    RawUser,
    Structure,
)
from federation_sync.shared import RecordError, RejectWriter, RunCounters

log = logging.getLogger(__name__)


class MemberDataError(RecordError):
    """Raised when a platform user cannot be turned into a Member."""

    reason = "member_data_error"


def _email(user: RawUser) -> str:
    email = user.email or user.alt_email
    if not email:
        raise MemberDataError(
            f"no email for user {user.id}",
            first_name=user.first_name,
            last_name=user.last_name,
            external_id=user.id,
        )
    return email


def reconcile_one(
    user: RawUser,
    license: License | None,
    address: Address | None,
    certificate: Document | None,
    questionnaire: Document | None,
    structures: Mapping[int, Structure],
) -> Member:
    email = _email(user)

    license_type = None
    status = None
    latest_license_season = None
    latest_structure = None
    if license is not None:
        license_type = (
            LicenseType.NonPracticing if license.non_practicing else license.license_type
        )
        latest_license_season = license.season
        latest_structure = structures.get(license.structure_id)
        if questionnaire is not None and questionnaire.season != license.season:
            questionnaire = None
        status = medical_certificate_status(
            certificate or NO_CERTIFICATE, questionnaire, license.season
        )

    return Member(
        first_name=user.first_name,
        last_name=user.last_name,
        email=email,
        dob=user.dob,
        metadata=Metadata(
            myffme_user_id=user.id,
            license_number=user.license_number,
            gender=user.gender,
            insee=address.insee if address else None,
            city=address.city if address else None,
            zip_code=address.zip_code if address else None,
            license_type=license_type,
            medical_certificate_status=status,
            latest_license_season=latest_license_season,
            latest_structure=latest_structure,
        ),
    )


def reconcile(
    users: Iterable[RawUser],
    licenses: Mapping[str, License],
    addresses: Mapping[str, Address],
    certificates: Mapping[str, Document],
    questionnaires: Mapping[str, Document],
    structures: Mapping[int, Structure],
    season: int | None = None,
    rejects: RejectWriter | None = None,
    counters: RunCounters | None = None,
) -> list[Member]:
    """Return one Member per user.

    The medical status target is the season of the user's latest license.
    When ``season`` is given, a license from a later season is treated as
    absent (sources are expected to have filtered those already).

    A user without any usable email raises MemberDataError. With a
    RejectWriter the user is written to the rejects file and skipped
    instead.
    """
    members: list[Member] = []
    for user in users:
        license = licenses.get(user.id)
        if license is not None and season is not None and license.season > season:
            log.warning(
                "license for %s is from season %s, after %s; ignoring",
                user.id, license.season, season,
            )
            if counters is not None:
                counters.warnings.append(
                    f"license for {user.id} is from season {license.season}, after {season}"
                )
            license = None
        try:
            member = reconcile_one(
                user,
                license,
                addresses.get(user.id),
                certificates.get(user.id),
                questionnaires.get(user.id),
                structures,
            )
        except MemberDataError as exc:
            if rejects is None:
                raise
            log.warning("rejecting %s: %s", user.id, exc)
            rejects.reject(exc)
            if counters is not None:
                counters.members_rejected += 1
            continue
        members.append(member)
    if counters is not None:
        counters.members_fetched += len(members)
    return members
