"""federation_sync.credentials

Platform bearer token and browser fingerprint, refreshed in the background.

Both values live in LatestValue cells owned by the caller and handed to
the transport (see myffme.MyffmeClient). CredentialRefresher runs one
refresh pass, then waits a jittered delay (long after a successful pass,
short after a failed one) on a threading.Event so stop() returns promptly.
Each value is renewed only once its validity window has elapsed.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Generic, TypeVar

import requests

log = logging.getLogger(__name__)

T = TypeVar("T")

LOGIN_URL = "https://app.myffme.fr/api/auth/login"
CHROME_RELEASES_URL = (
    "https://chromiumdash.appspot.com/fetch_releases"
    "?channel=Stable&platform=Windows&num=1&offset=0"
)

AUTHORIZATION_VALIDITY_SECONDS = 36_000  # 10h
FINGERPRINT_VALIDITY_SECONDS = 250_000  # ~3 days
DEFAULT_CHROME_VERSION = 135

SUCCESS_DELAY_SECONDS = 15_000
SUCCESS_JITTER_SECONDS = 1_500
FAILURE_DELAY_SECONDS = 600
FAILURE_JITTER_SECONDS = 100


# ---------------------------------------------------------------------------
# Single-slot cell
# ---------------------------------------------------------------------------

class LatestValue(Generic[T]):
    """Thread-safe holder of the most recent complete value, or None."""

    def __init__(self, value: T | None = None) -> None:
        self._lock = threading.Lock()
        self._value = value

    def get(self) -> T | None:
        with self._lock:
            return self._value

    def set(self, value: T | None) -> None:
        with self._lock:
            self._value = value


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Authorization:
    bearer_token: str
    timestamp: int

    def is_expired(self, now: int) -> bool:
        return now > self.timestamp + AUTHORIZATION_VALIDITY_SECONDS


@dataclass(frozen=True)
class BrowserFingerprint:
    chrome_version: int
    timestamp: int

    def is_expired(self, now: int) -> bool:
        return now > self.timestamp + FINGERPRINT_VALIDITY_SECONDS


def browser_headers(fingerprint: BrowserFingerprint | None, html: bool = False) -> dict[str, str]:
    """Headers presenting requests as a desktop Chrome of the given milestone."""
    version = fingerprint.chrome_version if fingerprint else DEFAULT_CHROME_VERSION
    headers = {
        "sec-ch-ua": (
            f'"Google Chrome";v="{version}", "Not-A.Brand";v="8", '
            f'"Chromium";v="{version}"'
        ),
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"Windows"',
        "User-Agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            f"(KHTML, like Gecko) Chrome/{version}.0.0.0 Safari/537.36"
        ),
    }
    if html:
        headers.update({
            "Accept": (
                "text/html,application/xhtml+xml,application/xml;q=0.9,"
                "image/avif,image/webp,image/apng,*/*;q=0.8"
            ),
            "Accept-Language": "fr-FR,fr;q=0.9",
            "sec-fetch-dest": "document",
            "sec-fetch-mode": "navigate",
            "sec-fetch-site": "none",
            "sec-fetch-user": "?1",
        })
    else:
        headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
    return headers


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------

def login(
    session: requests.Session,
    username: str,
    password: str,
    now: int,
    fingerprint: BrowserFingerprint | None = None,
    timeout: int = 15,
) -> Authorization | None:
    """POST the platform login form. Returns None on any failure."""
    try:
        resp = session.post(
            LOGIN_URL,
            json={"username": username, "password": password},
            headers=browser_headers(fingerprint),
            timeout=timeout,
        )
    except requests.RequestException as exc:
        log.warning("Login POST failed: %s", exc)
        return None
    if resp.status_code != 200:
        log.warning("Login POST returned status %s", resp.status_code)
        return None
    try:
        token = resp.json()["token"]
    except (ValueError, KeyError, TypeError) as exc:
        log.warning("Failed to parse login response: %s", exc)
        return None
    return Authorization(bearer_token=f"Bearer {token}", timestamp=now)


def fetch_chrome_version(
    session: requests.Session,
    now: int,
    timeout: int = 15,
) -> BrowserFingerprint | None:
    """Latest stable Chrome milestone for Windows, or None on failure."""
    try:
        resp = session.get(CHROME_RELEASES_URL, timeout=timeout)
        resp.raise_for_status()
        releases = resp.json()
    except (requests.RequestException, ValueError) as exc:
        log.debug("Failed to get chrome version: %s", exc)
        return None
    if not releases:
        log.debug("Failed to get chrome version: empty release list")
        return None
    try:
        milestone = int(releases[0]["milestone"])
    except (KeyError, TypeError, ValueError) as exc:
        log.debug("Failed to get chrome version: %s", exc)
        return None
    return BrowserFingerprint(chrome_version=milestone, timestamp=now)


# ---------------------------------------------------------------------------
# Refresher
# ---------------------------------------------------------------------------

class CredentialRefresher:
    """Keeps the authorization and fingerprint cells fresh until stopped."""

    def __init__(
        self,
        session: requests.Session,
        username: str,
        password: str,
        authorization: LatestValue[Authorization] | None = None,
        fingerprint: LatestValue[BrowserFingerprint] | None = None,
    ) -> None:
        self.session = session
        self.username = username
        self.password = password
        self.authorization = authorization if authorization is not None else LatestValue()
        self.fingerprint = fingerprint if fingerprint is not None else LatestValue()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def refresh_once(self, now: int | None = None) -> bool:
        """Renew whichever value has expired. True when nothing failed."""
        now = int(time.time()) if now is None else now
        success = True

        current_fp = self.fingerprint.get()
        if current_fp is None or current_fp.is_expired(now):
            fp = fetch_chrome_version(self.session, now)
            if fp is None:
                success = False
            else:
                self.fingerprint.set(fp)

        current_auth = self.authorization.get()
        if current_auth is None or current_auth.is_expired(now):
            auth = login(
                self.session, self.username, self.password, now,
                fingerprint=self.fingerprint.get(),
            )
            if auth is None:
                success = False
            else:
                self.authorization.set(auth)
        return success

    @staticmethod
    def next_delay(success: bool) -> float:
        if success:
            return SUCCESS_DELAY_SECONDS + random.uniform(
                -SUCCESS_JITTER_SECONDS, SUCCESS_JITTER_SECONDS
            )
        return FAILURE_DELAY_SECONDS + random.uniform(
            -FAILURE_JITTER_SECONDS, FAILURE_JITTER_SECONDS
        )

    def run(self) -> None:
        while not self._stop.is_set():
            success = self.refresh_once()
            if not success:
                log.warning("Credential refresh failed; retrying soon")
            if self._stop.wait(self.next_delay(success)):
                break

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run, name="credential-refresher", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def __enter__(self) -> CredentialRefresher:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
