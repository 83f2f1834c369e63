"""Unit tests for member lookups over an in-memory MemberDataSource."""

from __future__ import annotations

import pytest

from federation_sync.members import (
    SourceError,
    fetch_members,
    member_by_license_number,
    members_by_ids,
    members_by_name_and_dob,
    members_by_structure,
)
from federation_sync.models import (
    CERTIFICATE_RECREATIONAL,
    Document,
    License,
    MedicalCertificateStatus,
    RawUser,
    Structure,
)


def _user(user_id: str, first: str = "Jane", last: str = "Doe", dob: int = 19900412,
          license_number: int = 100000) -> RawUser:
    return RawUser(
        id=user_id, gender=None, first_name=first, last_name=last, dob=dob,
        email=f"{user_id}@example.com", alt_email=None,
        license_number=license_number,
    )


class FakeSource:
    """Serves fixed rows; records every call."""

    def __init__(self, users, licenses=None, certificates=None, structures=None, fail_on=None):
        self.users = users
        self._licenses = licenses or {}
        self._certificates = certificates or {}
        self._structures = structures or {}
        self.fail_on = fail_on
        self.calls: list[str] = []
        self.seasons: list[int] = []

    def _call(self, name):
        self.calls.append(name)
        if name == self.fail_on:
            raise SourceError(f"{name}: HTTP 500")

    def users_by_ids(self, ids):
        self._call("users_by_ids")
        return [u for u in self.users if u.id in ids]

    def users_by_structure(self, structure_id):
        self._call("users_by_structure")
        return [u for u in self.users if self._licenses.get(u.id) and self._licenses[u.id].structure_id == structure_id]

    def users_by_dob(self, dob):
        self._call("users_by_dob")
        return [u for u in self.users if u.dob == dob]

    def users_by_license_numbers(self, license_numbers):
        self._call("users_by_license_numbers")
        return [u for u in self.users if u.license_number in license_numbers]

    def licenses(self, user_ids, season):
        self._call("licenses")
        self.seasons.append(season)
        return {k: v for k, v in self._licenses.items() if k in user_ids}

    def addresses(self, user_ids):
        self._call("addresses")
        return {}

    def medical_certificates(self, user_ids, season):
        self._call("medical_certificates")
        return {k: v for k, v in self._certificates.items() if k in user_ids}

    def health_questionnaires(self, user_ids, season):
        self._call("health_questionnaires")
        return {}

    def structures(self, structure_ids):
        self._call("structures")
        return {k: v for k, v in self._structures.items() if k in structure_ids}


# ---------------------------------------------------------------------------
# fetch_members
# ---------------------------------------------------------------------------

class TestFetchMembers:
    def test_empty_population_fetches_nothing(self):
        source = FakeSource([])
        assert fetch_members(source, [], 2024) == []
        assert source.calls == []

    def test_joins_all_fact_sets(self):
        source = FakeSource(
            [_user("u1")],
            licenses={"u1": License(user_id="u1", season=2024, structure_id=10)},
            certificates={"u1": Document(season=2024, category=CERTIFICATE_RECREATIONAL)},
            structures={10: Structure(id=10, name="Club")},
        )
        members = fetch_members(source, source.users, 2024)
        assert len(members) == 1
        md = members[0].metadata
        assert md.medical_certificate_status == MedicalCertificateStatus.Recreational
        assert md.latest_structure == Structure(id=10, name="Club")

    def test_no_licenses_skips_structure_fetch(self):
        source = FakeSource([_user("u1")])
        fetch_members(source, source.users, 2024)
        assert "structures" not in source.calls

    @pytest.mark.parametrize("failing", ["licenses", "addresses", "medical_certificates", "health_questionnaires"])
    def test_any_source_failure_aborts(self, failing):
        source = FakeSource(
            [_user("u1")],
            licenses={"u1": License(user_id="u1", season=2024, structure_id=10)},
            fail_on=failing,
        )
        with pytest.raises(SourceError):
            fetch_members(source, source.users, 2024)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class TestLookups:
    def test_members_by_ids(self):
        source = FakeSource([_user("u1"), _user("u2"), _user("u3")])
        members = members_by_ids(source, ["u1", "u3"], 2024)
        assert [m.metadata.myffme_user_id for m in members] == ["u1", "u3"]

    def test_members_by_structure(self):
        source = FakeSource(
            [_user("u1"), _user("u2")],
            licenses={
                "u1": License(user_id="u1", season=2024, structure_id=10),
                "u2": License(user_id="u2", season=2024, structure_id=20),
            },
        )
        members = members_by_structure(source, 20, 2024)
        assert [m.metadata.myffme_user_id for m in members] == ["u2"]

    def test_member_by_license_number(self):
        source = FakeSource([_user("u1", license_number=111), _user("u2", license_number=222)])
        member = member_by_license_number(source, 222)
        assert member is not None
        assert member.metadata.myffme_user_id == "u2"

    def test_member_by_license_number_not_found(self):
        source = FakeSource([_user("u1", license_number=111)])
        assert member_by_license_number(source, 999) is None

    def test_member_by_license_number_duplicate(self):
        source = FakeSource([_user("u1", license_number=111), _user("u2", license_number=111)])
        assert member_by_license_number(source, 111) is None

    def test_member_by_license_number_uses_given_season(self):
        source = FakeSource([_user("u1", license_number=111)])
        member_by_license_number(source, 111, 2023)
        assert source.seasons == [2023]


class TestNameAndDob:
    def test_single_match_returned_as_is(self):
        source = FakeSource([_user("u1", first="Someone", last="Else")])
        members = members_by_name_and_dob(source, "Jane", "Doe", 19900412)
        assert [m.metadata.myffme_user_id for m in members] == ["u1"]

    def test_narrows_by_first_then_last_name(self):
        source = FakeSource([
            _user("u1", first="Élodie", last="Martin"),
            _user("u2", first="Elodie", last="Durand"),
            _user("u3", first="Paul", last="Martin"),
        ])
        members = members_by_name_and_dob(source, "ELODIE", "martin", 19900412)
        assert [m.metadata.myffme_user_id for m in members] == ["u1"]

    def test_no_name_match_keeps_everyone(self):
        source = FakeSource([_user("u1", first="Anne"), _user("u2", first="Marie")])
        members = members_by_name_and_dob(source, "Zoe", "Smith", 19900412)
        assert len(members) == 2

    def test_other_dob_excluded(self):
        source = FakeSource([_user("u1"), _user("u2", dob=20000101)])
        members = members_by_name_and_dob(source, "Jane", "Doe", 20000101)
        assert [m.metadata.myffme_user_id for m in members] == ["u2"]

    def test_uses_given_season(self):
        source = FakeSource([_user("u1")])
        members_by_name_and_dob(source, "Jane", "Doe", 19900412, 2023)
        assert source.seasons == [2023]
