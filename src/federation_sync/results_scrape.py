"""federation_sync.results_scrape

Competition history from the public results site.

One page per license number lists every ranked competition in a table
whose columns are located by their header text (Saison, Compétition,
Catégorie, Rang). The season cell reads "2023-2024"; the first year is the
season number.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass

import requests
from bs4 import BeautifulSoup

from federation_sync.credentials import BrowserFingerprint, browser_headers
from federation_sync.models import Competition, CompetitionResult
from federation_sync.shared import RunCounters

log = logging.getLogger(__name__)

RESULTS_URL = "https://mycompet.ffme.fr/resultat/palmares_{license_number:06d}"

_HEADERS = {
    "Saison": "season",
    "Compétition": "competition",
    "Catégorie": "category",
    "Rang": "rank",
}


class ResultsParseError(ValueError):
    """Raised when the results table does not have the expected shape."""


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

@dataclass
class RateLimiter:
    """Polite single-thread delay between page fetches, with jitter."""

    base_delay: float = 2.0
    jitter: float = 0.5

    def sleep(self) -> None:
        delay = self.base_delay + random.uniform(-self.jitter, self.jitter)
        time.sleep(max(0.0, delay))


def results_url(license_number: int) -> str:
    return RESULTS_URL.format(license_number=license_number)


def _parse_season(text: str) -> int:
    parts = text.split("-")
    if len(parts) != 2 or not parts[0].strip().isdigit():
        raise ResultsParseError(f"unparseable season {text!r}")
    return int(parts[0].strip())


def parse_results_html(html: str) -> list[CompetitionResult]:
    """Parse a results page. A page without a results table has no results."""
    soup = BeautifulSoup(html, "html.parser")
    table = soup.select_one("#resultats-content .index-table")
    if table is None:
        return []

    header_row = table.select_one("thead tr")
    if header_row is None:
        raise ResultsParseError("results table has no header row")
    columns: dict[str, int] = {}
    for i, cell in enumerate(header_row.find_all(["th", "td"])):
        key = _HEADERS.get(cell.get_text(strip=True))
        if key:
            columns[key] = i
    missing = [name for name, key in _HEADERS.items() if key not in columns]
    if missing:
        raise ResultsParseError(f"missing column header(s): {', '.join(missing)}")

    results: list[CompetitionResult] = []
    for row in table.select("tbody tr"):
        cells = [td.get_text(strip=True) for td in row.find_all("td")]
        if len(cells) <= max(columns.values()):
            raise ResultsParseError(f"short results row: {cells!r}")
        rank_text = cells[columns["rank"]]
        if not rank_text.isdigit():
            raise ResultsParseError(f"unparseable rank {rank_text!r}")
        results.append(CompetitionResult(
            competition=Competition(
                season=_parse_season(cells[columns["season"]]),
                name=cells[columns["competition"]],
            ),
            category_name=cells[columns["category"]] or None,
            rank=int(rank_text),
        ))
    return results


def fetch_competition_results(
    session: requests.Session,
    license_number: int,
    fingerprint: BrowserFingerprint | None = None,
    timeout: int = 30,
) -> list[CompetitionResult] | None:
    """Fetch and parse one member's results. None when the page is unusable."""
    url = results_url(license_number)
    try:
        resp = session.get(url, headers=browser_headers(fingerprint, html=True), timeout=timeout)
    except requests.RequestException as exc:
        log.warning("GET %s failed: %s", url, exc)
        return None
    if resp.status_code != 200:
        log.warning(
            "failed to get competition results for license number %s (status %s)",
            license_number, resp.status_code,
        )
        return None
    try:
        return parse_results_html(resp.text)
    except ResultsParseError as exc:
        log.warning("license number %s: %s", license_number, exc)
        return None


def scrape_results(
    session: requests.Session,
    license_numbers: list[int],
    rate_limiter: RateLimiter,
    fingerprint: BrowserFingerprint | None = None,
    counters: RunCounters | None = None,
) -> dict[int, list[CompetitionResult]]:
    """Results per license number; unusable pages are left out."""
    out: dict[int, list[CompetitionResult]] = {}
    for i, license_number in enumerate(license_numbers):
        if i > 0:
            rate_limiter.sleep()
        results = fetch_competition_results(session, license_number, fingerprint)
        if results is None:
            if counters is not None:
                counters.result_pages_failed += 1
                counters.warnings.append(f"no usable results page for license number {license_number}")
            continue
        if counters is not None:
            counters.result_pages_fetched += 1
        out[license_number] = results
    return out
