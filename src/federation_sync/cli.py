"""federation_sync.cli

Unified membership sync CLI.

Modes:
  update_metadata      refresh stored metadata of linked users from the platform
  add_missing          link or create store records for club members not linked yet
  competition_results  scrape competition history for this season's competitors
  insee_backfill       fill missing INSEE codes from city + postal code
  refresh_prices       write the season's fee schedule from platform prices
  quote                print the price quote (and optionally an order total)

Platform credentials are read from environment variables whose names are
given by --username-env / --password-env, never from CLI args.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import NoReturn

import click
import psycopg
import requests

from federation_sync.credentials import CredentialRefresher
from federation_sync.fees import (
    FeeScheduleValidationError,
    MissingFeeError,
    describe_order,
    dump_fee_schedule,
    load_fee_schedules,
    price_in_cents,
    price_quote,
)
from federation_sync.geo import GeoLookupError, cities_by_zip_code
from federation_sync.members import SourceError, members_by_ids, members_by_structure
from federation_sync.models import InsuranceLevel, InsuranceOption, LicenseType
from federation_sync.myffme import MyffmeClient
from federation_sync.normalize import parse_dob
from federation_sync.reconcile import MemberDataError
from federation_sync.results_scrape import RateLimiter, scrape_results
from federation_sync.season import is_discount_period, season as current_season
from federation_sync.shared import RejectWriter, RunCounters, write_run_report
from federation_sync.store import USER_PREFIX, PostgresUserStore, StaleRecordError
from federation_sync.sync import (
    apply_plan,
    competition_candidates,
    plan_competition_results,
    plan_insee_backfill,
    plan_metadata_updates,
    plan_new_members,
)

STORE_MODES = ("update_metadata", "add_missing", "competition_results", "insee_backfill")
PLATFORM_MODES = ("update_metadata", "add_missing", "refresh_prices")


def _fatal(run_id: str, message: str) -> NoReturn:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _platform_client(
    run_id: str,
    session: requests.Session,
    username_env: str,
    password_env: str,
    counters: RunCounters,
) -> tuple[MyffmeClient, CredentialRefresher]:
    username = os.environ.get(username_env, "")
    password = os.environ.get(password_env, "")
    if not username or not password:
        _fatal(run_id, f"env vars {username_env} and {password_env} must be set")
    refresher = CredentialRefresher(session, username, password)
    refresher.refresh_once()
    if refresher.authorization.get() is None:
        _fatal(run_id, "platform login failed")
    client = MyffmeClient(session, refresher.authorization, refresher.fingerprint, counters)
    return client, refresher


@click.command()
@click.option(
    "--mode",
    default="update_metadata",
    type=click.Choice([
        "update_metadata", "add_missing", "competition_results",
        "insee_backfill", "refresh_prices", "quote",
    ]),
    show_default=True,
    help="Sync mode",
)
@click.option("--db-dsn", default=None, help="[store modes] PostgreSQL DSN of the user store")
@click.option("--season", "season_year", default=None, type=int, help="Season (default: current)")
@click.option(
    "--structure-id",
    default=lambda: os.environ.get("MYFFME_STRUCTURE_ID"),
    type=int,
    help="[add_missing|refresh_prices] Club structure id (default: $MYFFME_STRUCTURE_ID)",
)
@click.option("--username-env", default="MYFFME_USERNAME", show_default=True, help="Env var name holding the platform username")
@click.option("--password-env", default="MYFFME_PASSWORD", show_default=True, help="Env var name holding the platform password")
# pricing flags
@click.option("--fees-dir", default="./config/fees", type=click.Path(), show_default=True, help="[quote|refresh_prices] Directory of per-season fee schedules")
@click.option("--base-license-price-in-cents", default=140_00, type=int, show_default=True, help="[refresh_prices] Club price the tier fees are deducted from")
@click.option("--dob", default=None, help="[quote] Member date of birth, YYYY-MM-DD")
@click.option("--license-type", default=None, type=click.Choice([lt.value for lt in LicenseType]), help="[quote] Price an order for this license type")
@click.option("--insurance-level", default="Base", type=click.Choice([lvl.value for lvl in InsuranceLevel]), show_default=True, help="[quote] Insurance level of the priced order")
@click.option("--insurance-option", "insurance_options", multiple=True, type=click.Choice([o.value for o in InsuranceOption]), help="[quote] Insurance add-on (repeatable)")
@click.option("--equipment-rental", is_flag=True, default=False, help="[quote] Add equipment rental to the priced order")
@click.option("--discount/--no-discount", default=None, help="[quote] Force the discount period on or off (default: by date)")
# scrape flags
@click.option("--request-delay-seconds", default=2.0, type=float, show_default=True, help="[competition_results] Base delay between page fetches")
@click.option("--request-jitter-seconds", default=0.5, type=float, show_default=True, help="[competition_results] Random ±jitter added to each delay")
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/federation_sync_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--log-level", default="WARNING", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]), show_default=True)
def main(
    mode: str,
    db_dsn: str | None,
    season_year: int | None,
    structure_id: int | None,
    username_env: str,
    password_env: str,
    fees_dir: str,
    base_license_price_in_cents: int,
    dob: str | None,
    license_type: str | None,
    insurance_level: str,
    insurance_options: tuple[str, ...],
    equipment_rental: bool,
    discount: bool | None,
    request_delay_seconds: float,
    request_jitter_seconds: float,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Federation membership sync CLI."""
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    season = season_year if season_year is not None else current_season()
    counters = RunCounters()

    click.echo(f"[{run_id}] Starting {mode} run (season={season}, dry_run={dry_run})")

    if mode == "quote":
        _run_quote(
            run_id, Path(fees_dir), season, dob, license_type, insurance_level,
            insurance_options, equipment_rental, discount,
        )
        return

    if mode in ("add_missing", "refresh_prices") and structure_id is None:
        _fatal(run_id, f"--structure-id (or MYFFME_STRUCTURE_ID) is required for {mode}")
    if mode in STORE_MODES and not db_dsn:
        _fatal(run_id, f"--db-dsn is required for {mode}")

    session = requests.Session()
    rejects = RejectWriter(Path(rejects_path))
    refresher: CredentialRefresher | None = None
    client: MyffmeClient | None = None
    if mode in PLATFORM_MODES:
        client, refresher = _platform_client(run_id, session, username_env, password_env, counters)
        refresher.start()

    try:
        if mode == "refresh_prices":
            _run_refresh_prices(
                run_id, client, structure_id, season,  # type: ignore[arg-type]
                base_license_price_in_cents, Path(fees_dir), dry_run,
            )
        else:
            _run_store_mode(
                run_id, mode, db_dsn, client, session, season,  # type: ignore[arg-type]
                structure_id, counters, rejects, dry_run,
                RateLimiter(base_delay=request_delay_seconds, jitter=request_jitter_seconds),
                refresher,
            )
    finally:
        if refresher is not None:
            refresher.stop()
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"season": season, "rejects_path": rejects_path},
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if counters.members_rejected:
        click.echo(f"[{run_id}] {counters.members_rejected} member(s) rejected; see {rejects_path}")


# ---------------------------------------------------------------------------
# Store modes
# ---------------------------------------------------------------------------

def _run_store_mode(
    run_id: str,
    mode: str,
    db_dsn: str,
    client: MyffmeClient | None,
    session: requests.Session,
    season: int,
    structure_id: int | None,
    counters: RunCounters,
    rejects: RejectWriter,
    dry_run: bool,
    rate_limiter: RateLimiter,
    refresher: CredentialRefresher | None,
) -> None:
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        store = PostgresUserStore(conn)
        records = store.list(USER_PREFIX)
        counters.records_read = len(records)
        click.echo(f"[{run_id}] {len(records)} store records")

        try:
            if mode == "update_metadata":
                linked_ids = sorted({
                    md.myffme_user_id
                    for md in (r.parsed_metadata() for r in records)
                    if md is not None and md.is_linked
                })
                members = members_by_ids(client, linked_ids, season, rejects, counters)  # type: ignore[arg-type]
                ops = plan_metadata_updates(records, members, counters)
            elif mode == "add_missing":
                members = members_by_structure(client, structure_id, season, rejects, counters)  # type: ignore[arg-type]
                ops = plan_new_members(records, members, rejects, counters)
            elif mode == "competition_results":
                candidates = competition_candidates(records, season)
                click.echo(f"[{run_id}] {len(candidates)} competitors licensed for {season}")
                fingerprint = refresher.fingerprint.get() if refresher else None
                results = scrape_results(
                    session,
                    [md.license_number for _, md in candidates],  # type: ignore[misc]
                    rate_limiter, fingerprint, counters,
                )
                ops = plan_competition_results(candidates, results)
            else:
                ops = plan_insee_backfill(
                    records, lambda zip_code: cities_by_zip_code(session, zip_code), counters,
                )
        except (SourceError, GeoLookupError, MemberDataError) as exc:
            conn.rollback()
            _fatal(run_id, f"fetch phase failed, nothing written: {exc}")

        click.echo(f"[{run_id}] {len(ops)} planned write(s)")
        try:
            apply_plan(store, ops, dry_run=dry_run)
        except StaleRecordError as exc:
            _fatal(run_id, f"store changed during the run; rolled back: {exc}")
        except psycopg.Error as exc:
            _fatal(run_id, f"run failed with DB error; rolled back: {exc}")
        if dry_run:
            click.echo(f"[{run_id}] [dry-run] {len(ops)} write(s) rolled back")
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------

def _run_refresh_prices(
    run_id: str,
    client: MyffmeClient,
    structure_id: int,
    season: int,
    base_license_price_in_cents: int,
    fees_dir: Path,
    dry_run: bool,
) -> None:
    try:
        schedule = client.fetch_fee_schedule(structure_id, season, base_license_price_in_cents)
    except SourceError as exc:
        _fatal(run_id, f"price fetch failed: {exc}")
    text = dump_fee_schedule(schedule)
    if dry_run:
        click.echo(text)
        return
    path = fees_dir / f"{season}.yml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    click.echo(f"[{run_id}] Fee schedule written: {path}")


def _run_quote(
    run_id: str,
    fees_dir: Path,
    season: int,
    dob: str | None,
    license_type: str | None,
    insurance_level: str,
    insurance_options: tuple[str, ...],
    equipment_rental: bool,
    discount: bool | None,
) -> None:
    discount_active = is_discount_period() if discount is None else discount
    try:
        schedules = load_fee_schedules(fees_dir)
        output: dict = {"season": season, "discount_active": discount_active}
        if dob is not None:
            date_of_birth = parse_dob(dob)
            if date_of_birth is None:
                _fatal(run_id, f"invalid --dob {dob!r}, expected YYYY-MM-DD")
            output["quote"] = price_quote(schedules, date_of_birth, season, discount_active).to_dict()
        if license_type is not None:
            lt = LicenseType(license_type)
            level = InsuranceLevel(insurance_level)
            options = [InsuranceOption(o) for o in insurance_options]
            output["order"] = {
                "label": describe_order(lt, level, options, equipment_rental),
                "price_in_cents": price_in_cents(
                    schedules, lt, level, options, season, discount_active, equipment_rental,
                ),
            }
    except (FeeScheduleValidationError, MissingFeeError) as exc:
        _fatal(run_id, str(exc))
    click.echo(json.dumps(output, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
