"""Unit tests for fee schedules and order pricing.

No database or network access required.
"""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from federation_sync.fees import (
    FeeScheduleValidationError,
    LicenseFees,
    MissingFeeError,
    describe_order,
    dump_fee_schedule,
    load_fee_schedule,
    load_fee_schedules,
    parse_fee_schedule,
    price_in_cents,
    price_quote,
    quote_license_type,
)
from federation_sync.models import InsuranceLevel, InsuranceOption, LicenseType

PROJECT_ROOT = Path(__file__).parent.parent.parent

SCHEDULE_YAML = textwrap.dedent("""\
    season: 2025
    base_license_price_in_cents: 14000
    licenses:
      licence_adulte:
        federal_fee_in_cents: 5350
        regional_fee_in_cents: 1000
        department_fee_in_cents: 650
      Child:
        federal_fee_in_cents: 3951
        regional_fee_in_cents: 800
        department_fee_in_cents: 450
        club_fee_in_cents: 6800
    insurance_levels:
      rc: 380
      base: 1100
      base_plus: 1400
      base_plus_plus: 2100
    insurance_options:
      ski_piste: 500
      vtt: 3000
      slackline_highline: 500
      trail: 1000
    equipment_rental_in_cents: 5000
""")


@pytest.fixture()
def schedules(tmp_path):
    path = tmp_path / "2025.yml"
    path.write_text(SCHEDULE_YAML, encoding="utf-8")
    return load_fee_schedules(tmp_path)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

class TestLoader:
    def test_club_fee_derived_from_base_price(self, schedules):
        fees = schedules[2025].license(LicenseType.Adult)
        assert fees == LicenseFees(5350, 1000, 650, 7000)

    def test_explicit_club_fee_kept(self, schedules):
        assert schedules[2025].license(LicenseType.Child).club_fee_in_cents == 6800

    def test_hash_recorded(self, tmp_path):
        path = tmp_path / "2025.yml"
        path.write_text(SCHEDULE_YAML, encoding="utf-8")
        schedule = load_fee_schedule(path)
        assert len(schedule.yaml_hash) == 64
        assert schedule.raw_yaml == SCHEDULE_YAML

    def test_missing_top_level_key(self):
        with pytest.raises(FeeScheduleValidationError, match="insurance_options"):
            parse_fee_schedule({"season": 2025, "licenses": {}, "insurance_levels": {}})

    def test_unknown_level_spelling(self):
        with pytest.raises(FeeScheduleValidationError, match="insurance level"):
            parse_fee_schedule({
                "season": 2025, "licenses": {},
                "insurance_levels": {"gold": 100}, "insurance_options": {},
            })

    def test_negative_amount(self):
        with pytest.raises(FeeScheduleValidationError, match=">= 0"):
            parse_fee_schedule({
                "season": 2025, "licenses": {},
                "insurance_levels": {"base": -1}, "insurance_options": {},
            })

    def test_non_integer_amount(self):
        with pytest.raises(FeeScheduleValidationError, match="integer"):
            parse_fee_schedule({
                "season": 2025, "licenses": {},
                "insurance_levels": {"base": 11.5}, "insurance_options": {},
            })

    def test_tiers_above_base_price(self):
        with pytest.raises(FeeScheduleValidationError, match="exceed"):
            parse_fee_schedule({
                "season": 2025,
                "base_license_price_in_cents": 1000,
                "licenses": {"adult": {
                    "federal_fee_in_cents": 900,
                    "regional_fee_in_cents": 100,
                    "department_fee_in_cents": 100,
                }},
                "insurance_levels": {}, "insurance_options": {},
            })

    def test_duplicate_season(self, tmp_path):
        (tmp_path / "a.yml").write_text(SCHEDULE_YAML, encoding="utf-8")
        (tmp_path / "b.yml").write_text(SCHEDULE_YAML, encoding="utf-8")
        with pytest.raises(FeeScheduleValidationError, match="defined twice"):
            load_fee_schedules(tmp_path)

    def test_dump_is_loadable(self, schedules, tmp_path):
        out = tmp_path / "dumped" / "2025.yml"
        out.parent.mkdir()
        out.write_text(dump_fee_schedule(schedules[2025]), encoding="utf-8")
        reloaded = load_fee_schedule(out)
        assert reloaded.license_fees == schedules[2025].license_fees
        assert reloaded.level_fees == schedules[2025].level_fees
        assert reloaded.option_fees == schedules[2025].option_fees
        assert reloaded.equipment_rental_in_cents == 5000

    def test_shipped_config_is_valid(self):
        schedules = load_fee_schedules(PROJECT_ROOT / "config" / "fees")
        assert 2025 in schedules


# ---------------------------------------------------------------------------
# price_in_cents
# ---------------------------------------------------------------------------

class TestPrice:
    def test_sums_all_components(self, schedules):
        total = price_in_cents(
            schedules, LicenseType.Adult, InsuranceLevel.Base,
            [InsuranceOption.Ski, InsuranceOption.TrailRunning], 2025, False,
        )
        assert total == 14000 + 1100 + 500 + 1000

    def test_discount_halves_federal_only(self, schedules):
        full = price_in_cents(schedules, LicenseType.Adult, InsuranceLevel.RC, [], 2025, False)
        discounted = price_in_cents(schedules, LicenseType.Adult, InsuranceLevel.RC, [], 2025, True)
        assert full - discounted == 5350 - 5350 // 2

    def test_discount_rounds_down(self, schedules):
        discounted = price_in_cents(schedules, LicenseType.Child, InsuranceLevel.RC, [], 2025, True)
        assert discounted == 3951 // 2 + 800 + 450 + 6800 + 380

    def test_equipment_rental(self, schedules):
        without = price_in_cents(schedules, LicenseType.Adult, InsuranceLevel.Base, [], 2025, False)
        with_rental = price_in_cents(
            schedules, LicenseType.Adult, InsuranceLevel.Base, [], 2025, False, equipment_rental=True,
        )
        assert with_rental - without == 5000

    def test_missing_license_type(self, schedules):
        with pytest.raises(MissingFeeError, match="Family"):
            price_in_cents(schedules, LicenseType.Family, InsuranceLevel.Base, [], 2025, False)

    def test_missing_season(self, schedules):
        with pytest.raises(MissingFeeError, match="2030"):
            price_in_cents(schedules, LicenseType.Adult, InsuranceLevel.Base, [], 2030, False)

    def test_missing_equipment_rental(self):
        schedule = parse_fee_schedule({
            "season": 2025,
            "licenses": {"adult": {
                "federal_fee_in_cents": 1, "regional_fee_in_cents": 1,
                "department_fee_in_cents": 1, "club_fee_in_cents": 1,
            }},
            "insurance_levels": {"base": 1},
            "insurance_options": {},
        })
        with pytest.raises(MissingFeeError, match="equipment rental"):
            price_in_cents(
                {2025: schedule}, LicenseType.Adult, InsuranceLevel.Base, [], 2025, False,
                equipment_rental=True,
            )


# ---------------------------------------------------------------------------
# Quote
# ---------------------------------------------------------------------------

class TestQuote:
    def test_license_type_by_age(self):
        assert quote_license_type(20100315, 2025) == LicenseType.Child
        assert quote_license_type(20090315, 2025) == LicenseType.Adult

    def test_child_quote(self, schedules):
        quote = price_quote(schedules, 20100315, 2025, False)
        assert quote.license_type == LicenseType.Child
        assert quote.base_price_in_cents == 3951 + 800 + 450 + 6800 + 1100
        assert quote.level_deltas_in_cents == {
            InsuranceLevel.BasePlus: 300,
            InsuranceLevel.BasePlusPlus: 1000,
        }
        assert quote.addon_prices_in_cents[InsuranceOption.MountainBike] == 3000
        assert quote.equipment_rental_in_cents == 5000

    def test_quote_to_dict(self, schedules):
        d = price_quote(schedules, 19800101, 2025, True).to_dict()
        assert d["license_type"] == "Adult"
        assert d["base_price_in_cents"] == 5350 // 2 + 1000 + 650 + 7000 + 1100
        assert [o["level"] for o in d["insurance_options"]] == ["BasePlus", "BasePlusPlus"]
        assert [a["option"] for a in d["addons"]] == [
            "Ski", "MountainBike", "SlacklineAndHighline", "TrailRunning",
        ]


# ---------------------------------------------------------------------------
# describe_order
# ---------------------------------------------------------------------------

class TestDescribeOrder:
    def test_plain(self):
        assert describe_order(LicenseType.Child, InsuranceLevel.BasePlus) == "Licence Base+ jeune"

    def test_with_options(self):
        label = describe_order(
            LicenseType.Adult, InsuranceLevel.BasePlusPlus,
            [InsuranceOption.MountainBike, InsuranceOption.TrailRunning],
        )
        assert label == "Licence Base++ adulte (option VTT, option trail)"

    def test_equipment_rental_listed_first(self):
        label = describe_order(
            LicenseType.Adult, InsuranceLevel.Base, [InsuranceOption.Ski], equipment_rental=True,
        )
        assert label == "Licence Base adulte (option location matériel, option ski de piste)"
