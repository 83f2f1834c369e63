"""Unit tests for medical certificate status derivation."""

from __future__ import annotations

import pytest

from federation_sync.medical import medical_certificate_status
from federation_sync.models import (
    CERTIFICATE_COMPETITION,
    CERTIFICATE_GENERIC,
    CERTIFICATE_RECREATIONAL,
    HEALTH_QUESTIONNAIRE,
    NO_CERTIFICATE,
    Document,
    MedicalCertificateStatus as Status,
)


def _cert(season: int, category: int) -> Document:
    return Document(season=season, category=category)


def _qs(season: int) -> Document:
    return Document(season=season, category=HEALTH_QUESTIONNAIRE)


# ---------------------------------------------------------------------------
# Certificate for the target season
# ---------------------------------------------------------------------------

class TestCurrentCertificate:
    def test_competition(self):
        assert medical_certificate_status(_cert(2024, CERTIFICATE_COMPETITION), None, 2024) == Status.Competition

    def test_recreational(self):
        assert medical_certificate_status(_cert(2024, CERTIFICATE_RECREATIONAL), None, 2024) == Status.Recreational

    def test_generic_counts_as_recreational(self):
        assert medical_certificate_status(_cert(2024, 7), None, 2024) == Status.Recreational

    @pytest.mark.parametrize("category", [CERTIFICATE_COMPETITION, CERTIFICATE_RECREATIONAL, 6, 0])
    def test_never_waiting_with_questionnaire(self, category):
        status = medical_certificate_status(_cert(2024, category), _qs(2024), 2024)
        assert status in (Status.Competition, Status.Recreational)


# ---------------------------------------------------------------------------
# Older certificate extended by a questionnaire
# ---------------------------------------------------------------------------

class TestGraceWindow:
    def test_competition_within_grace(self):
        assert medical_certificate_status(_cert(2022, CERTIFICATE_COMPETITION), _qs(2024), 2024) == Status.Competition

    def test_recreational_within_grace(self):
        assert medical_certificate_status(_cert(2022, CERTIFICATE_RECREATIONAL), _qs(2024), 2024) == Status.Recreational

    @pytest.mark.parametrize("category", [CERTIFICATE_COMPETITION, CERTIFICATE_RECREATIONAL])
    def test_exactly_three_seasons_old_is_lapsed(self, category):
        assert medical_certificate_status(_cert(2021, category), _qs(2024), 2024) == Status.HealthQuestionnaire

    def test_generic_gets_no_extension(self):
        assert medical_certificate_status(_cert(2023, 6), _qs(2024), 2024) == Status.HealthQuestionnaire

    def test_no_questionnaire_waits(self):
        assert medical_certificate_status(_cert(2023, CERTIFICATE_COMPETITION), None, 2024) == Status.WaitingForDocument

    def test_questionnaire_for_another_season_waits(self):
        assert medical_certificate_status(_cert(2023, CERTIFICATE_RECREATIONAL), _qs(2023), 2024) == Status.WaitingForDocument


# ---------------------------------------------------------------------------
# No certificate on file
# ---------------------------------------------------------------------------

class TestNoCertificate:
    def test_sentinel_is_generic_season_zero(self):
        assert NO_CERTIFICATE.season == 0
        assert NO_CERTIFICATE.category == CERTIFICATE_GENERIC

    def test_without_questionnaire(self):
        assert medical_certificate_status(NO_CERTIFICATE, None, 2024) == Status.WaitingForDocument

    def test_with_questionnaire(self):
        assert medical_certificate_status(NO_CERTIFICATE, _qs(2024), 2024) == Status.HealthQuestionnaire
