"""federation_sync.medical

Medical certificate eligibility for a season.

A certificate counts for the season it was issued in. A health
questionnaire completed for the target season extends a recreational or
competition certificate for up to three seasons after it was issued
(strictly: a certificate exactly three seasons old is no longer extended).
Generic certificates get no extension.
"""

from __future__ import annotations

from federation_sync.models import (
    CERTIFICATE_COMPETITION,
    CERTIFICATE_RECREATIONAL,
    Document,
    MedicalCertificateStatus,
)

GRACE_SEASONS = 3

_VALID_STATUS = {
    CERTIFICATE_COMPETITION: MedicalCertificateStatus.Competition,
    CERTIFICATE_RECREATIONAL: MedicalCertificateStatus.Recreational,
}


def medical_certificate_status(
    certificate: Document,
    questionnaire: Document | None,
    target_season: int,
) -> MedicalCertificateStatus:
    """Derive the eligibility status; total over every input.

    Callers without a certificate on file pass models.NO_CERTIFICATE.
    """
    valid = _VALID_STATUS.get(certificate.category, MedicalCertificateStatus.Recreational)
    if certificate.season == target_season:
        return valid

    has_questionnaire = (
        questionnaire is not None and questionnaire.season == target_season
    )
    if not has_questionnaire:
        return MedicalCertificateStatus.WaitingForDocument

    if certificate.category in _VALID_STATUS:
        if certificate.season + GRACE_SEASONS > target_season:
            return valid
    return MedicalCertificateStatus.HealthQuestionnaire
