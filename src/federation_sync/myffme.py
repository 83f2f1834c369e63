"""federation_sync.myffme

GraphQL adapter for the federation back office (MemberDataSource).

Every query goes to one Hasura endpoint with the current bearer token and
browser fingerprint read from the LatestValue cells. Transport failures,
non-200 responses, GraphQL errors and undecodable rows all raise
SourceError: a member lookup never proceeds on a partial fact set.

Row parsers are module-level so they can be exercised without HTTP.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from federation_sync.credentials import (
    Authorization,
    BrowserFingerprint,
    LatestValue,
    browser_headers,
)
from federation_sync.fees import (
    DEFAULT_BASE_LICENSE_PRICE_IN_CENTS,
    DEFAULT_EQUIPMENT_RENTAL_IN_CENTS,
    FeeSchedule,
    LicenseFees,
)
from federation_sync.members import SourceError
from federation_sync.models import (
    HEALTH_QUESTIONNAIRE,
    Address,
    Document,
    InsuranceLevel,
    InsuranceOption,
    License,
    LicenseType,
    RawUser,
    Structure,
    StructureHierarchy,
    UnknownValueError,
    parse_gender,
    parse_insurance_level,
    parse_insurance_option,
    parse_license_type,
)
from federation_sync.normalize import format_dob, normalize_email, parse_dob, trim
from federation_sync.shared import RunCounters

log = logging.getLogger(__name__)

GRAPHQL_URL = "https://back-prod.core.myffme.fr/v1/graphql"
ORIGIN = "https://www.myffme.fr"
REFERER = "https://www.myffme.fr/"

CERTIFICATE_DOCUMENT_TYPES = [5, 6, 7, 9]
LICENSE_PRODUCT_CATEGORY_ID = "d5b8f23e-cd8e-4179-ac21-0b6f150820f4"
INSURANCE_LEVEL_OPTION_TYPE_ID = "0bd82f7a-8aa1-4aa7-80e9-43e32a37f829"
INSURANCE_OPTION_OPTION_TYPE_ID = "7912cb1c-b5e1-4e21-8195-1ec2573fb609"


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

_USER_FIELDS = """
            id
            gender: CT_EST_Civilite
            first_name: CT_Prenom
            last_name: CT_Nom
            dob: DN_DateNaissance
            email: CT_Email
            alt_email: CT_Email2
            license_number: LicenceNumero
"""

GET_USERS_BY_IDS = """
    query getUsersByIds($ids: [uuid!]!) {
        list: UTI_Utilisateurs(where: { id: { _in: $ids } }) {%s}
    }
""" % _USER_FIELDS

GET_USERS_BY_DATE_OF_BIRTH = """
    query getUsersByDateOfBirth($dob: date!) {
        list: UTI_Utilisateurs(where: { DN_DateNaissance: { _eq: $dob } }) {%s}
    }
""" % _USER_FIELDS

GET_USERS_BY_LICENSE_NUMBERS = """
    query getUsersByLicenseNumbers($license_numbers: [bigint!]!) {
        list: UTI_Utilisateurs(where: { LicenceNumero: { _in: $license_numbers } }) {%s}
    }
""" % _USER_FIELDS

GET_USERS_BY_STRUCTURE_ID = """
    query getUsersByStructureId($id: Int!) {
        list: UTI_Utilisateurs(
            where: { STR_StructureUtilisateurs: { ID_Structure: { _eq: $id } } }
        ) {%s}
    }
""" % _USER_FIELDS

GET_LICENSES_BY_USER_IDS = """
    query getLicensesByUserIds($ids: [uuid!]!, $season: Int!) {
        list: licence(
            where: { user_id: { _in: $ids }, season_id: { _lte: $season } }
            order_by: [ { user_id: asc }, { season_id: desc_nulls_last } ]
            distinct_on: user_id
        ) {
            product_id
            non_practicing
            structure_id
            user_id
            season: season_id
        }
    }
"""

GET_ADDRESSES_BY_USER_IDS = """
    query getAddressesByUserIds($ids: [uuid!]!) {
        list: ADR_Adresse(
            where: { ID_Utilisateur: { _in: $ids } }
            order_by: [ { ID_Utilisateur: asc }, { Z_DateModification: desc } ]
            distinct_on: [ ID_Utilisateur ]
        ) {
            user_id: ID_Utilisateur
            line1: Adresse1
            line2: Adresse2
            insee: CodeInsee
            zip_code: CodePostal
            city: Ville
        }
    }
"""

GET_DOCUMENTS_BY_USER_IDS = """
    query getDocumentsByUserIds($ids: [uuid!]!, $season: Int!, $types: [Int!]!) {
        list: DOC_Document(
            distinct_on: ID_Utilisateur
            order_by: [ { ID_Utilisateur: asc }, { ID_Saison: desc_nulls_last } ]
            where: {
                ID_Utilisateur: { _in: $ids }
                EST_DocumentValide: { _eq: true }
                EST_Actif: { _eq: true }
                ID_Type_Document: { _in: $types }
                ID_Saison: { _lte: $season }
            }
        ) {
            user_id: ID_Utilisateur
            season: ID_Saison
            category: ID_Type_Document
        }
    }
"""

GET_STRUCTURES_BY_IDS = """
    query getStructuresByIds($ids: [Int!]!) {
        list: structure(where: { id: { _in: $ids } }) {
            id
            code: federal_code
            name: label
            department: department_id
            department_structure_id: ct_id
            region_structure_id: ligue_id
            national_structure_id: ffme_id
        }
    }
"""

GET_PRODUCTS = """
    query getProducts($category: uuid!) {
        list: product(where: { product_categorie_id: { _eq: $category } }) {
            id
            license_type: slug
        }
    }
"""

GET_OPTIONS = """
    query getOptions($level_type: uuid!, $option_type: uuid!) {
        levels: option(where: { option_type_id: { _eq: $level_type } }) {
            id
            slug
        }
        options: option(where: { option_type_id: { _eq: $option_type } }) {
            id
            slug
        }
    }
"""

GET_PRICES = """
    query getPrices(
        $products: [uuid!]!
        $levels: [uuid!]!
        $options: [uuid!]!
        $structure_ids: [Int!]!
        $national_structure_id: Int!
        $season: Int!
    ) {
        products: price(
            where: {
                season_id: { _eq: $season }
                product_id: { _in: $products }
                structure_id: { _in: $structure_ids }
                option_id: { _is_null: true }
            }
        ) {
            product_id
            structure_id
            price_in_cents: value
        }
        levels: price(
            where: {
                season_id: { _eq: $season }
                option_id: { _in: $levels }
                structure_id: { _eq: $national_structure_id }
                product_id: { _is_null: true }
            }
        ) {
            option_id
            price_in_cents: value
        }
        options: price(
            where: {
                season_id: { _eq: $season }
                option_id: { _in: $options }
                structure_id: { _eq: $national_structure_id }
                product_id: { _is_null: true }
            }
        ) {
            option_id
            price_in_cents: value
        }
    }
"""


# ---------------------------------------------------------------------------
# Row parsers
# ---------------------------------------------------------------------------

def parse_user_row(row: dict[str, Any]) -> RawUser:
    try:
        dob = parse_dob(row.get("dob"))
        if dob is None:
            raise SourceError(f"user {row.get('id')}: invalid date of birth {row.get('dob')!r}")
        gender = row.get("gender")
        license_number = row.get("license_number")
        if license_number is None:
            raise SourceError(f"user {row.get('id')}: no license number")
        return RawUser(
            id=str(row["id"]),
            gender=parse_gender(gender) if gender is not None else None,
            first_name=trim(row.get("first_name")) or "",
            last_name=trim(row.get("last_name")) or "",
            dob=dob,
            email=normalize_email(row.get("email")),
            alt_email=normalize_email(row.get("alt_email")),
            license_number=int(license_number),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise SourceError(f"undecodable user row {row!r}: {exc}") from exc


def parse_license_row(
    row: dict[str, Any],
    counters: RunCounters | None = None,
) -> License:
    """Decode a license row; an unknown product leaves license_type unset."""
    try:
        license_type: LicenseType | None
        try:
            license_type = parse_license_type(row.get("product_id"))
        except UnknownValueError as exc:
            log.warning("license for user %s: %s", row.get("user_id"), exc)
            if counters is not None:
                counters.unknown_products += 1
                counters.warnings.append(f"license for user {row.get('user_id')}: {exc}")
            license_type = None
        return License(
            user_id=str(row["user_id"]),
            season=int(row["season"]),
            structure_id=int(row["structure_id"]),
            non_practicing=bool(row.get("non_practicing")),
            license_type=license_type,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise SourceError(f"undecodable license row {row!r}: {exc}") from exc


def parse_address_row(row: dict[str, Any]) -> Address:
    try:
        return Address(
            user_id=row.get("user_id"),
            line1=trim(row.get("line1")),
            line2=trim(row.get("line2")),
            insee=trim(row.get("insee")),
            zip_code=trim(row.get("zip_code")),
            city=trim(row.get("city")),
        )
    except AttributeError as exc:
        raise SourceError(f"undecodable address row {row!r}: {exc}") from exc


def parse_document_row(row: dict[str, Any]) -> Document:
    try:
        return Document(
            user_id=row.get("user_id"),
            season=int(row["season"]),
            category=int(row["category"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise SourceError(f"undecodable document row {row!r}: {exc}") from exc


def parse_structure_row(row: dict[str, Any]) -> Structure:
    try:
        department = row.get("department")
        return Structure(
            id=int(row["id"]),
            name=row["name"],
            code=trim(row.get("code")),
            department=str(department) if department is not None else None,
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise SourceError(f"undecodable structure row {row!r}: {exc}") from exc


def parse_hierarchy_row(row: dict[str, Any]) -> StructureHierarchy:
    try:
        return StructureHierarchy(
            id=int(row["id"]),
            department_structure_id=int(row["department_structure_id"]),
            region_structure_id=int(row["region_structure_id"]),
            national_structure_id=int(row["national_structure_id"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise SourceError(f"undecodable structure hierarchy {row!r}: {exc}") from exc


def parse_price_row(row: dict[str, Any]) -> int:
    try:
        return int(row["price_in_cents"])
    except (KeyError, TypeError, ValueError) as exc:
        raise SourceError(f"undecodable price row {row!r}: {exc}") from exc


def _keyed(items: list[Any]) -> dict[str, Any]:
    """Key rows by user id; rows without one are dropped."""
    out: dict[str, Any] = {}
    for item in items:
        if item.user_id is None:
            continue
        out[item.user_id] = item
    return out


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class MyffmeClient:
    """MemberDataSource backed by the platform GraphQL endpoint."""

    def __init__(
        self,
        session: requests.Session,
        authorization: LatestValue[Authorization],
        fingerprint: LatestValue[BrowserFingerprint],
        counters: RunCounters | None = None,
        timeout: int = 30,
    ) -> None:
        self.session = session
        self.authorization = authorization
        self.fingerprint = fingerprint
        self.counters = counters
        self.timeout = timeout

    def _graphql(self, operation: str, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        auth = self.authorization.get()
        if auth is None:
            raise SourceError(f"{operation}: no valid platform authorization")
        headers = browser_headers(self.fingerprint.get())
        headers.update({
            "Origin": ORIGIN,
            "Referer": REFERER,
            "x-hasura-role": "admin",
            "Authorization": auth.bearer_token,
        })
        try:
            resp = self.session.post(
                GRAPHQL_URL,
                json={"operationName": operation, "query": query, "variables": variables},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise SourceError(f"{operation}: {exc}") from exc
        if resp.status_code != 200:
            raise SourceError(f"{operation}: HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise SourceError(f"{operation}: invalid JSON response") from exc
        if payload.get("errors"):
            raise SourceError(f"{operation}: {payload['errors']}")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise SourceError(f"{operation}: response has no data")
        return data

    def _list(self, operation: str, query: str, variables: dict[str, Any]) -> list[dict[str, Any]]:
        rows = self._graphql(operation, query, variables).get("list")
        if not isinstance(rows, list):
            raise SourceError(f"{operation}: response has no list")
        return rows

    # -- users ----------------------------------------------------------------

    def users_by_ids(self, ids: list[str]) -> list[RawUser]:
        rows = self._list("getUsersByIds", GET_USERS_BY_IDS, {"ids": ids})
        return [parse_user_row(r) for r in rows]

    def users_by_structure(self, structure_id: int) -> list[RawUser]:
        rows = self._list("getUsersByStructureId", GET_USERS_BY_STRUCTURE_ID, {"id": structure_id})
        return [parse_user_row(r) for r in rows]

    def users_by_dob(self, dob: int) -> list[RawUser]:
        rows = self._list("getUsersByDateOfBirth", GET_USERS_BY_DATE_OF_BIRTH, {"dob": format_dob(dob)})
        return [parse_user_row(r) for r in rows]

    def users_by_license_numbers(self, license_numbers: list[int]) -> list[RawUser]:
        rows = self._list(
            "getUsersByLicenseNumbers",
            GET_USERS_BY_LICENSE_NUMBERS,
            {"license_numbers": license_numbers},
        )
        return [parse_user_row(r) for r in rows]

    # -- per-user facts -------------------------------------------------------

    def licenses(self, user_ids: list[str], season: int) -> dict[str, License]:
        rows = self._list(
            "getLicensesByUserIds", GET_LICENSES_BY_USER_IDS,
            {"ids": user_ids, "season": season},
        )
        return _keyed([parse_license_row(r, self.counters) for r in rows])

    def addresses(self, user_ids: list[str]) -> dict[str, Address]:
        rows = self._list("getAddressesByUserIds", GET_ADDRESSES_BY_USER_IDS, {"ids": user_ids})
        return _keyed([parse_address_row(r) for r in rows])

    def _documents(self, user_ids: list[str], season: int, types: list[int]) -> dict[str, Document]:
        rows = self._list(
            "getDocumentsByUserIds", GET_DOCUMENTS_BY_USER_IDS,
            {"ids": user_ids, "season": season, "types": types},
        )
        return _keyed([parse_document_row(r) for r in rows])

    def medical_certificates(self, user_ids: list[str], season: int) -> dict[str, Document]:
        return self._documents(user_ids, season, CERTIFICATE_DOCUMENT_TYPES)

    def health_questionnaires(self, user_ids: list[str], season: int) -> dict[str, Document]:
        return self._documents(user_ids, season, [HEALTH_QUESTIONNAIRE])

    def structures(self, structure_ids: list[int]) -> dict[int, Structure]:
        rows = self._list("getStructuresByIds", GET_STRUCTURES_BY_IDS, {"ids": structure_ids})
        return {s.id: s for s in (parse_structure_row(r) for r in rows)}

    def structure_hierarchy(self, structure_id: int) -> StructureHierarchy:
        rows = self._list("getStructuresByIds", GET_STRUCTURES_BY_IDS, {"ids": [structure_id]})
        if len(rows) != 1:
            raise SourceError(f"structure {structure_id}: expected 1 row, got {len(rows)}")
        return parse_hierarchy_row(rows[0])

    # -- prices ---------------------------------------------------------------

    def fetch_fee_schedule(
        self,
        structure_id: int,
        season: int,
        base_license_price_in_cents: int = DEFAULT_BASE_LICENSE_PRICE_IN_CENTS,
    ) -> FeeSchedule:
        """Build a season's FeeSchedule from the platform price table.

        License prices are attributed to the department, region or
        national tier by the structure that set them; the club fee is what
        remains of base_license_price_in_cents. Tier prices adding up to more
        than that raise SourceError.
        """
        hierarchy = self.structure_hierarchy(structure_id)

        products: dict[str, LicenseType] = {}
        for row in self._list("getProducts", GET_PRODUCTS, {"category": LICENSE_PRODUCT_CATEGORY_ID}):
            try:
                products[row["id"]] = parse_license_type(row.get("license_type"))
            except UnknownValueError as exc:
                log.warning("product %s: %s", row.get("id"), exc)

        option_data = self._graphql("getOptions", GET_OPTIONS, {
            "level_type": INSURANCE_LEVEL_OPTION_TYPE_ID,
            "option_type": INSURANCE_OPTION_OPTION_TYPE_ID,
        })
        levels: dict[str, InsuranceLevel] = {}
        for row in option_data.get("levels") or []:
            try:
                levels[row["id"]] = parse_insurance_level(row.get("slug"))
            except UnknownValueError as exc:
                log.warning("insurance level %s: %s", row.get("id"), exc)
        options: dict[str, InsuranceOption] = {}
        for row in option_data.get("options") or []:
            try:
                options[row["id"]] = parse_insurance_option(row.get("slug"))
            except UnknownValueError as exc:
                log.warning("insurance option %s: %s", row.get("id"), exc)

        prices = self._graphql("getPrices", GET_PRICES, {
            "products": sorted(products),
            "levels": sorted(levels),
            "options": sorted(options),
            "structure_ids": [
                hierarchy.department_structure_id,
                hierarchy.region_structure_id,
                hierarchy.national_structure_id,
            ],
            "national_structure_id": hierarchy.national_structure_id,
            "season": season,
        })

        tiers: dict[LicenseType, dict[str, int]] = {}
        tier_by_structure = {
            hierarchy.department_structure_id: "department_fee_in_cents",
            hierarchy.region_structure_id: "regional_fee_in_cents",
            hierarchy.national_structure_id: "federal_fee_in_cents",
        }
        for row in prices.get("products") or []:
            license_type = products.get(row.get("product_id"))
            tier = tier_by_structure.get(row.get("structure_id"))
            if license_type is None or tier is None:
                continue
            tiers.setdefault(license_type, {})[tier] = parse_price_row(row)

        license_fees: dict[LicenseType, LicenseFees] = {}
        for license_type, t in tiers.items():
            if len(t) != 3:
                log.warning(
                    "%s: incomplete tier prices %s; leaving it out of the schedule",
                    license_type.value, sorted(t),
                )
                continue
            federal = t["federal_fee_in_cents"]
            regional = t["regional_fee_in_cents"]
            department = t["department_fee_in_cents"]
            club = base_license_price_in_cents - federal - regional - department
            if club < 0:
                raise SourceError(
                    f"{license_type.value}: tier prices {federal + regional + department} "
                    f"exceed the base license price {base_license_price_in_cents}"
                )
            license_fees[license_type] = LicenseFees(
                federal_fee_in_cents=federal,
                regional_fee_in_cents=regional,
                department_fee_in_cents=department,
                club_fee_in_cents=club,
            )

        level_fees: dict[InsuranceLevel, int] = {}
        for row in prices.get("levels") or []:
            level = levels.get(row.get("option_id"))
            if level is not None:
                level_fees[level] = parse_price_row(row)
        option_fees: dict[InsuranceOption, int] = {}
        for row in prices.get("options") or []:
            option = options.get(row.get("option_id"))
            if option is not None:
                option_fees[option] = parse_price_row(row)
        return FeeSchedule(
            season=season,
            license_fees=license_fees,
            level_fees=level_fees,
            option_fees=option_fees,
            equipment_rental_in_cents=DEFAULT_EQUIPMENT_RENTAL_IN_CENTS,
        )
