"""federation_sync.fees

Membership order pricing.

Responsibilities:
  - Load and validate per-season YAML fee schedules from config/fees/*.yml
  - Compose the price of an order: license tiers + insurance level + add-ons
  - Build the member-facing quote (base price, level deltas, add-on prices)
  - Render the order label shown on the payment page

Usage:
    from pathlib import Path
    from federation_sync.fees import load_fee_schedules, price_in_cents

    schedules = load_fee_schedules(Path("config/fees"))
    total = price_in_cents(
        schedules, LicenseType.Adult, InsuranceLevel.Base,
        [InsuranceOption.Ski], season=2025, discount_active=False,
    )

All amounts are integer cents.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from federation_sync.models import (
    INSURANCE_LEVEL_ORDER,
    InsuranceLevel,
    InsuranceOption,
    LicenseType,
    UnknownValueError,
    parse_insurance_level,
    parse_insurance_option,
    parse_license_type,
)
from federation_sync.season import Category, category

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BASE_LICENSE_PRICE_IN_CENTS = 140_00
# Club-set; the platform price table does not carry it.
DEFAULT_EQUIPMENT_RENTAL_IN_CENTS = 50_00

REQUIRED_YAML_KEYS = frozenset({"season", "licenses", "insurance_levels", "insurance_options"})

REQUIRED_LICENSE_FEE_KEYS = frozenset({
    "federal_fee_in_cents",
    "regional_fee_in_cents",
    "department_fee_in_cents",
})

LICENSE_NAMES = {
    LicenseType.Adult: "adulte",
    LicenseType.Child: "jeune",
    LicenseType.Family: "famille",
    LicenseType.NonMemberAdult: "adulte hors club",
    LicenseType.NonMemberChild: "jeune hors club",
    LicenseType.NonPracticing: "non pratiquant",
}

INSURANCE_LEVEL_NAMES = {
    InsuranceLevel.RC: "RC",
    InsuranceLevel.Base: "Base",
    InsuranceLevel.BasePlus: "Base+",
    InsuranceLevel.BasePlusPlus: "Base++",
}

INSURANCE_OPTION_NAMES = {
    InsuranceOption.MountainBike: "option VTT",
    InsuranceOption.Ski: "option ski de piste",
    InsuranceOption.TrailRunning: "option trail",
    InsuranceOption.SlacklineAndHighline: "option slackline/highline",
}

EQUIPMENT_RENTAL_NAME = "option location matériel"

# Add-ons in the order the quote lists them.
QUOTE_ADDON_ORDER = (
    InsuranceOption.Ski,
    InsuranceOption.MountainBike,
    InsuranceOption.SlacklineAndHighline,
    InsuranceOption.TrailRunning,
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MissingFeeError(LookupError):
    """Raised when a fee needed for a price is not in the schedule."""


class FeeScheduleValidationError(ValueError):
    """Raised when a YAML fee schedule fails schema validation."""


# ---------------------------------------------------------------------------
# Schedule dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LicenseFees:
    """Per-tier components of one license type's fee."""

    federal_fee_in_cents: int
    regional_fee_in_cents: int
    department_fee_in_cents: int
    club_fee_in_cents: int

    def total(self, discount_active: bool) -> int:
        federal = self.federal_fee_in_cents
        if discount_active:
            federal //= 2
        return (
            federal
            + self.regional_fee_in_cents
            + self.department_fee_in_cents
            + self.club_fee_in_cents
        )


@dataclass
class FeeSchedule:
    """Parsed, validated fee schedule for one season."""

    season: int
    license_fees: dict[LicenseType, LicenseFees]
    level_fees: dict[InsuranceLevel, int]
    option_fees: dict[InsuranceOption, int]
    equipment_rental_in_cents: int | None = None
    yaml_hash: str = ""
    raw_yaml: str = field(repr=False, default="")

    def license(self, license_type: LicenseType) -> LicenseFees:
        try:
            return self.license_fees[license_type]
        except KeyError:
            raise MissingFeeError(
                f"no {license_type.value} license fee for season {self.season}"
            ) from None

    def level(self, level: InsuranceLevel) -> int:
        try:
            return self.level_fees[level]
        except KeyError:
            raise MissingFeeError(
                f"no {level.value} insurance fee for season {self.season}"
            ) from None

    def option(self, option: InsuranceOption) -> int:
        try:
            return self.option_fees[option]
        except KeyError:
            raise MissingFeeError(
                f"no {option.value} option fee for season {self.season}"
            ) from None

    def equipment_rental(self) -> int:
        if self.equipment_rental_in_cents is None:
            raise MissingFeeError(f"no equipment rental fee for season {self.season}")
        return self.equipment_rental_in_cents


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_fee_schedule(yaml_path: Path) -> FeeSchedule:
    """Load, validate, and return a FeeSchedule from a YAML file.

    Raises:
        FeeScheduleValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    schedule = parse_fee_schedule(data)
    schedule.yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    schedule.raw_yaml = raw
    return schedule


def load_fee_schedules(directory: Path) -> dict[int, FeeSchedule]:
    """Load every *.yml schedule in directory, keyed by season."""
    schedules: dict[int, FeeSchedule] = {}
    for path in sorted(directory.glob("*.yml")):
        schedule = load_fee_schedule(path)
        if schedule.season in schedules:
            raise FeeScheduleValidationError(
                f"season {schedule.season} defined twice (second in {path.name})"
            )
        schedules[schedule.season] = schedule
    return schedules


def _schedule_key(parse: Any, enum_cls: type, key: Any) -> Any:
    """Accept a canonical variant name or any external spelling."""
    if isinstance(key, str) and key in enum_cls.__members__:
        return enum_cls[key]
    try:
        return parse(key)
    except UnknownValueError as exc:
        raise FeeScheduleValidationError(str(exc)) from exc


def _cents(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise FeeScheduleValidationError(f"{where} must be an integer, got {value!r}")
    if value < 0:
        raise FeeScheduleValidationError(f"{where} must be >= 0, got {value}")
    return value


def parse_fee_schedule(data: Any) -> FeeSchedule:
    """Validate a decoded YAML document and build a FeeSchedule.

    Validates:
      - Required top-level keys present
      - license, level and option keys are known spellings
      - every amount is a non-negative integer
      - the derived club fee is not negative
    """
    if not isinstance(data, dict):
        raise FeeScheduleValidationError("fee schedule must be a mapping")
    missing = REQUIRED_YAML_KEYS - data.keys()
    if missing:
        raise FeeScheduleValidationError(f"missing required keys: {sorted(missing)}")

    season = data["season"]
    if isinstance(season, bool) or not isinstance(season, int):
        raise FeeScheduleValidationError(f"season must be an integer, got {season!r}")

    base_price = _cents(
        data.get("base_license_price_in_cents", DEFAULT_BASE_LICENSE_PRICE_IN_CENTS),
        "base_license_price_in_cents",
    )

    license_fees: dict[LicenseType, LicenseFees] = {}
    for key, tiers in (data["licenses"] or {}).items():
        license_type = _schedule_key(parse_license_type, LicenseType, key)
        if not isinstance(tiers, dict):
            raise FeeScheduleValidationError(f"licenses.{key} must be a mapping")
        missing = REQUIRED_LICENSE_FEE_KEYS - tiers.keys()
        if missing:
            raise FeeScheduleValidationError(f"licenses.{key} missing {sorted(missing)}")
        federal = _cents(tiers["federal_fee_in_cents"], f"licenses.{key}.federal_fee_in_cents")
        regional = _cents(tiers["regional_fee_in_cents"], f"licenses.{key}.regional_fee_in_cents")
        department = _cents(tiers["department_fee_in_cents"], f"licenses.{key}.department_fee_in_cents")
        if "club_fee_in_cents" in tiers:
            club = _cents(tiers["club_fee_in_cents"], f"licenses.{key}.club_fee_in_cents")
        else:
            club = base_price - federal - regional - department
            if club < 0:
                raise FeeScheduleValidationError(
                    f"licenses.{key}: tiers exceed base_license_price_in_cents ({base_price})"
                )
        license_fees[license_type] = LicenseFees(federal, regional, department, club)

    level_fees: dict[InsuranceLevel, int] = {}
    for key, value in (data["insurance_levels"] or {}).items():
        level = _schedule_key(parse_insurance_level, InsuranceLevel, key)
        level_fees[level] = _cents(value, f"insurance_levels.{key}")

    option_fees: dict[InsuranceOption, int] = {}
    for key, value in (data["insurance_options"] or {}).items():
        option = _schedule_key(parse_insurance_option, InsuranceOption, key)
        option_fees[option] = _cents(value, f"insurance_options.{key}")

    rental = data.get("equipment_rental_in_cents")
    return FeeSchedule(
        season=season,
        license_fees=license_fees,
        level_fees=level_fees,
        option_fees=option_fees,
        equipment_rental_in_cents=(
            _cents(rental, "equipment_rental_in_cents") if rental is not None else None
        ),
    )


def dump_fee_schedule(schedule: FeeSchedule) -> str:
    """Serialize a schedule to YAML that load_fee_schedule accepts."""
    data: dict[str, Any] = {
        "season": schedule.season,
        "licenses": {
            lt.value: {
                "federal_fee_in_cents": fees.federal_fee_in_cents,
                "regional_fee_in_cents": fees.regional_fee_in_cents,
                "department_fee_in_cents": fees.department_fee_in_cents,
                "club_fee_in_cents": fees.club_fee_in_cents,
            }
            for lt, fees in schedule.license_fees.items()
        },
        "insurance_levels": {lvl.value: v for lvl, v in schedule.level_fees.items()},
        "insurance_options": {opt.value: v for opt, v in schedule.option_fees.items()},
    }
    if schedule.equipment_rental_in_cents is not None:
        data["equipment_rental_in_cents"] = schedule.equipment_rental_in_cents
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

def schedule_for(schedules: Mapping[int, FeeSchedule], season: int) -> FeeSchedule:
    try:
        return schedules[season]
    except KeyError:
        raise MissingFeeError(f"no fee schedule for season {season}") from None


def price_in_cents(
    schedules: Mapping[int, FeeSchedule],
    license_type: LicenseType,
    insurance_level: InsuranceLevel,
    insurance_options: Iterable[InsuranceOption],
    season: int,
    discount_active: bool,
    equipment_rental: bool = False,
) -> int:
    """Total price of an order.

    License fee (federal halved, rounding down, during the discount
    period) + insurance level fee + each add-on fee. Any missing fee
    raises MissingFeeError.
    """
    schedule = schedule_for(schedules, season)
    total = schedule.license(license_type).total(discount_active)
    total += schedule.level(insurance_level)
    for option in insurance_options:
        total += schedule.option(option)
    if equipment_rental:
        total += schedule.equipment_rental()
    return total


@dataclass(frozen=True)
class PriceQuote:
    license_type: LicenseType
    base_price_in_cents: int
    level_deltas_in_cents: dict[InsuranceLevel, int]
    addon_prices_in_cents: dict[InsuranceOption, int]
    equipment_rental_in_cents: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "license_type": self.license_type.value,
            "base_price_in_cents": self.base_price_in_cents,
            "insurance_options": [
                {"level": lvl.value, "price_in_cents": cents}
                for lvl, cents in self.level_deltas_in_cents.items()
            ],
            "addons": [
                {"option": opt.value, "price_in_cents": cents}
                for opt, cents in self.addon_prices_in_cents.items()
            ],
            "equipment_rental_price_in_cents": self.equipment_rental_in_cents,
        }


def quote_license_type(date_of_birth: int, season: int) -> LicenseType:
    if category(date_of_birth, season) < Category.U18:
        return LicenseType.Child
    return LicenseType.Adult


def price_quote(
    schedules: Mapping[int, FeeSchedule],
    date_of_birth: int,
    season: int,
    discount_active: bool,
) -> PriceQuote:
    """Quote shown to a member before ordering.

    The base price is the child or adult license with Base insurance. The
    higher insurance levels are shown as deltas against Base; add-ons are
    shown at their own price.
    """
    schedule = schedule_for(schedules, season)
    license_type = quote_license_type(date_of_birth, season)
    base_level = schedule.level(InsuranceLevel.Base)
    base_price = schedule.license(license_type).total(discount_active) + base_level
    deltas = {
        level: schedule.level(level) - base_level
        for level in INSURANCE_LEVEL_ORDER
        if level in (InsuranceLevel.BasePlus, InsuranceLevel.BasePlusPlus)
    }
    addons = {option: schedule.option(option) for option in QUOTE_ADDON_ORDER}
    return PriceQuote(
        license_type=license_type,
        base_price_in_cents=base_price,
        level_deltas_in_cents=deltas,
        addon_prices_in_cents=addons,
        equipment_rental_in_cents=schedule.equipment_rental_in_cents,
    )


def describe_order(
    license_type: LicenseType,
    insurance_level: InsuranceLevel,
    insurance_options: Iterable[InsuranceOption] = (),
    equipment_rental: bool = False,
) -> str:
    """Order label, e.g. 'Licence Base++ adulte (option VTT, option trail)'."""
    label = f"Licence {INSURANCE_LEVEL_NAMES[insurance_level]} {LICENSE_NAMES[license_type]}"
    extras = [EQUIPMENT_RENTAL_NAME] if equipment_rental else []
    extras.extend(INSURANCE_OPTION_NAMES[o] for o in insurance_options)
    if extras:
        label += f" ({', '.join(extras)})"
    return label
