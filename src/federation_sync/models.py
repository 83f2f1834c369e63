"""federation_sync.models

Value types shared by the reconciliation engine, the platform adapter and
the user store.

Enum values are the canonical variant names, which is also how they are
serialized into stored metadata. The platform spells the same values in
several ways (French slugs, English slugs, product/option UUIDs); every
known spelling is listed in one table per enum and anything else raises
UnknownValueError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class UnknownValueError(ValueError):
    """Raised when an external spelling does not map to a known enum value."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Gender(Enum):
    Female = "Female"
    Male = "Male"


class LicenseType(Enum):
    Adult = "Adult"
    NonMemberAdult = "NonMemberAdult"
    Child = "Child"
    NonMemberChild = "NonMemberChild"
    Family = "Family"
    NonPracticing = "NonPracticing"


class InsuranceLevel(Enum):
    RC = "RC"
    Base = "Base"
    BasePlus = "BasePlus"
    BasePlusPlus = "BasePlusPlus"


class InsuranceOption(Enum):
    MountainBike = "MountainBike"
    Ski = "Ski"
    SlacklineAndHighline = "SlacklineAndHighline"
    TrailRunning = "TrailRunning"


class MedicalCertificateStatus(Enum):
    Recreational = "Recreational"
    Competition = "Competition"
    HealthQuestionnaire = "HealthQuestionnaire"
    WaitingForDocument = "WaitingForDocument"


# Ordering used for display and for the "levels are ordered" contract.
INSURANCE_LEVEL_ORDER = (
    InsuranceLevel.RC,
    InsuranceLevel.Base,
    InsuranceLevel.BasePlus,
    InsuranceLevel.BasePlusPlus,
)


# ---------------------------------------------------------------------------
# External spelling tables
# ---------------------------------------------------------------------------

GENDER_CODES: dict[int, Gender] = {
    0: Gender.Female,
    1: Gender.Male,
}

LICENSE_TYPE_SPELLINGS: dict[str, LicenseType] = {
    "adult": LicenseType.Adult,
    "licence_adulte": LicenseType.Adult,
    "ab229bd0-53c7-4c8c-83d1-bade2cbb5fcc": LicenseType.Adult,
    "non_member_adult": LicenseType.NonMemberAdult,
    "hors_club_adulte": LicenseType.NonMemberAdult,
    "8dd8c63f-a9da-4237-aec9-74f905fb2b37": LicenseType.NonMemberAdult,
    "child": LicenseType.Child,
    "licence_jeune": LicenseType.Child,
    "09fd57d3-0f38-407d-95b5-08d3e8369297": LicenseType.Child,
    "non_member_child": LicenseType.NonMemberChild,
    "hors_club_jeune": LicenseType.NonMemberChild,
    "46786452-7ca2-4dc1-a15d-effb3f7e69b0": LicenseType.NonMemberChild,
    "family": LicenseType.Family,
    "licence_famille": LicenseType.Family,
    "865d950e-9825-49f3-858b-ca1a776734b3": LicenseType.Family,
    "non_practicing": LicenseType.NonPracticing,
}

INSURANCE_LEVEL_SPELLINGS: dict[str, InsuranceLevel] = {
    "rc": InsuranceLevel.RC,
    "Rc": InsuranceLevel.RC,
    "RC": InsuranceLevel.RC,
    "8e1b2635-a76a-40a4-a278-2cd6768d03c0": InsuranceLevel.RC,
    "base": InsuranceLevel.Base,
    "Base": InsuranceLevel.Base,
    "4061064e-4d0a-4c49-9c66-109960a0437a": InsuranceLevel.Base,
    "base_plus": InsuranceLevel.BasePlus,
    "BasePlus": InsuranceLevel.BasePlus,
    "a3a2d318-c8a5-410b-ac9d-1f07c1d69bdc": InsuranceLevel.BasePlus,
    "base_plus_plus": InsuranceLevel.BasePlusPlus,
    "BasePlusPlus": InsuranceLevel.BasePlusPlus,
    "902fb734-a182-419a-af61-008b8bff3a4a": InsuranceLevel.BasePlusPlus,
}

INSURANCE_OPTION_SPELLINGS: dict[str, InsuranceOption] = {
    "vtt": InsuranceOption.MountainBike,
    "MountainBike": InsuranceOption.MountainBike,
    "mountain_bike": InsuranceOption.MountainBike,
    "5e6eb7ec-7dc6-445b-ab50-9b45cb202f1e": InsuranceOption.MountainBike,
    "ski_piste": InsuranceOption.Ski,
    "Ski": InsuranceOption.Ski,
    "ski": InsuranceOption.Ski,
    "92e7eebe-71cd-4258-b178-141587374b81": InsuranceOption.Ski,
    "slackline_highline": InsuranceOption.SlacklineAndHighline,
    "SlacklineAndHighline": InsuranceOption.SlacklineAndHighline,
    "slackline_and_highline": InsuranceOption.SlacklineAndHighline,
    "dae0654d-977c-46c5-8f48-63de2d127efd": InsuranceOption.SlacklineAndHighline,
    "trail": InsuranceOption.TrailRunning,
    "TrailRunning": InsuranceOption.TrailRunning,
    "trail_running": InsuranceOption.TrailRunning,
    # Misspelled variants the platform has emitted historically.
    "TrialRunning": InsuranceOption.TrailRunning,
    "trial_running": InsuranceOption.TrailRunning,
    "d9c13113-70eb-4e04-a265-aba8f8ea7e8b": InsuranceOption.TrailRunning,
}

MEDICAL_CERTIFICATE_STATUS_SPELLINGS: dict[str, MedicalCertificateStatus] = {
    "loisir": MedicalCertificateStatus.Recreational,
    "competition": MedicalCertificateStatus.Competition,
    "qs": MedicalCertificateStatus.HealthQuestionnaire,
    "waiting_document": MedicalCertificateStatus.WaitingForDocument,
    "waiting_validation": MedicalCertificateStatus.WaitingForDocument,
    "validate": MedicalCertificateStatus.WaitingForDocument,
}


def _lookup(table: dict[Any, Any], raw: Any, kind: str) -> Any:
    try:
        return table[raw]
    except (KeyError, TypeError):
        raise UnknownValueError(f"unknown {kind}: {raw!r}") from None


def parse_gender(raw: Any) -> Gender:
    return _lookup(GENDER_CODES, raw, "gender")


def parse_license_type(raw: str | None) -> LicenseType:
    return _lookup(LICENSE_TYPE_SPELLINGS, raw, "license type")


def parse_insurance_level(raw: str | None) -> InsuranceLevel:
    return _lookup(INSURANCE_LEVEL_SPELLINGS, raw, "insurance level")


def parse_insurance_option(raw: str | None) -> InsuranceOption:
    return _lookup(INSURANCE_OPTION_SPELLINGS, raw, "insurance option")


def parse_medical_certificate_status(raw: str | None) -> MedicalCertificateStatus:
    return _lookup(MEDICAL_CERTIFICATE_STATUS_SPELLINGS, raw, "medical certificate status")


def _enum_from_name(enum_cls: type[Enum], raw: str | None) -> Any:
    """Decode a stored variant name (the serialized form) back to its enum."""
    if raw is None:
        return None
    try:
        return enum_cls[raw]
    except KeyError:
        raise UnknownValueError(f"unknown {enum_cls.__name__}: {raw!r}") from None


# ---------------------------------------------------------------------------
# Platform records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawUser:
    """Identity row for one platform user."""

    id: str
    gender: Gender | None
    first_name: str
    last_name: str
    dob: int
    email: str | None
    alt_email: str | None
    license_number: int


@dataclass(frozen=True)
class License:
    user_id: str
    season: int
    structure_id: int
    non_practicing: bool = False
    license_type: LicenseType | None = None


@dataclass(frozen=True)
class Document:
    """A medical certificate or health questionnaire.

    category is the platform document type: 5 recreational certificate,
    9 competition certificate, 60 health questionnaire, anything else a
    generic certificate.
    """

    season: int
    category: int
    user_id: str | None = None


CERTIFICATE_RECREATIONAL = 5
CERTIFICATE_GENERIC = 0
CERTIFICATE_COMPETITION = 9
HEALTH_QUESTIONNAIRE = 60

# Stands in for a user with no certificate on file.
NO_CERTIFICATE = Document(season=0, category=CERTIFICATE_GENERIC)


@dataclass(frozen=True)
class Address:
    user_id: str | None = None
    line1: str | None = None
    line2: str | None = None
    insee: str | None = None
    zip_code: str | None = None
    city: str | None = None


@dataclass(frozen=True)
class Structure:
    """A club as retained on a member's metadata."""

    id: int
    name: str
    code: str | None = None
    department: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"id": self.id, "name": self.name}
        if self.code is not None:
            d["code"] = self.code
        if self.department is not None:
            d["department"] = self.department
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Structure:
        return cls(
            id=int(d["id"]),
            name=d["name"],
            code=d.get("code"),
            department=d.get("department"),
        )


@dataclass(frozen=True)
class StructureHierarchy:
    """A club with the ids of its department, region and national ancestors."""

    id: int
    department_structure_id: int
    region_structure_id: int
    national_structure_id: int


@dataclass(frozen=True)
class Competition:
    season: int
    name: str


@dataclass(frozen=True)
class CompetitionResult:
    competition: Competition
    category_name: str | None = None
    rank: int | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "competition": {
                "season": self.competition.season,
                "name": self.competition.name,
            },
        }
        if self.category_name is not None:
            d["category_name"] = self.category_name
        if self.rank is not None:
            d["rank"] = self.rank
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> CompetitionResult:
        comp = d["competition"]
        return cls(
            competition=Competition(season=int(comp["season"]), name=comp["name"]),
            category_name=d.get("category_name"),
            rank=d.get("rank"),
        )


# ---------------------------------------------------------------------------
# Reconciled member
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Metadata:
    """Storable subset of a member's derived facts."""

    myffme_user_id: str | None = None
    license_number: int | None = None
    gender: Gender | None = None
    insee: str | None = None
    city: str | None = None
    zip_code: str | None = None
    license_type: LicenseType | None = None
    medical_certificate_status: MedicalCertificateStatus | None = None
    latest_license_season: int | None = None
    latest_structure: Structure | None = None
    competition_results: tuple[CompetitionResult, ...] | None = None

    @property
    def is_linked(self) -> bool:
        return self.myffme_user_id is not None and self.license_number is not None

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready dict.

        The identity fields are always present (null when unknown); every
        other field is omitted when unset so that a round trip through
        from_dict preserves presence exactly.
        """
        d: dict[str, Any] = {
            "myffme_user_id": self.myffme_user_id,
            "license_number": self.license_number,
            "gender": self.gender.value if self.gender else None,
        }
        optional: dict[str, Any] = {
            "insee": self.insee,
            "city": self.city,
            "zip_code": self.zip_code,
            "license_type": self.license_type.value if self.license_type else None,
            "medical_certificate_status": (
                self.medical_certificate_status.value
                if self.medical_certificate_status else None
            ),
            "latest_license_season": self.latest_license_season,
            "latest_structure": (
                self.latest_structure.to_dict() if self.latest_structure else None
            ),
            "competition_results": (
                [r.to_dict() for r in self.competition_results]
                if self.competition_results is not None else None
            ),
        }
        d.update({k: v for k, v in optional.items() if v is not None})
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Metadata:
        structure = d.get("latest_structure")
        results = d.get("competition_results")
        return cls(
            myffme_user_id=d.get("myffme_user_id"),
            license_number=d.get("license_number"),
            gender=_enum_from_name(Gender, d.get("gender")),
            insee=d.get("insee"),
            city=d.get("city"),
            zip_code=d.get("zip_code"),
            license_type=_enum_from_name(LicenseType, d.get("license_type")),
            medical_certificate_status=_enum_from_name(
                MedicalCertificateStatus, d.get("medical_certificate_status")
            ),
            latest_license_season=d.get("latest_license_season"),
            latest_structure=Structure.from_dict(structure) if structure else None,
            competition_results=(
                tuple(CompetitionResult.from_dict(r) for r in results)
                if results is not None else None
            ),
        )


@dataclass(frozen=True)
class Member:
    first_name: str
    last_name: str
    email: str
    dob: int
    metadata: Metadata = field(default_factory=Metadata)
