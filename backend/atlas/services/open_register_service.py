"""
OpenRegister Service - German company registry client and the two-stage
company/owner enrichment used by registry workflows
"""

import asyncio
import json
import logging
import re
import unicodedata
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from pydantic import BaseModel, Field

from atlas.config import settings
from atlas.core.cancellation import CancellationToken
from atlas.core.exceptions import OpenRegisterError
from atlas.models.grid import Row, WorkflowConfig
from atlas.services.reference_service import stringify_value

logger = logging.getLogger(__name__)


class EnrichmentStatus:
    """Values of the workflow status columns"""
    OPEN = "Open"
    DONE = "Done"
    ERROR = "Error"
    AUTO = "Auto"


AG_OWNERSHIP = "AG (no ownership data)"
NAME_PREFIXES = ("von", "van", "de", "zu", "vom", "der", "den")
_UMLAUTS = (("ä", "a"), ("ö", "o"), ("ü", "u"), ("ß", "ss"), ("ae", "a"), ("oe", "o"), ("ue", "u"))


class EnrichedPerson(BaseModel):
    """A director or owner found for a company"""
    full_name: str = ""
    first_name: str = ""
    last_name: str = ""
    role: str = ""
    type: str = ""
    percentage_share: Optional[float] = None
    date_of_birth: str = ""
    age: Optional[int] = None
    company_name: str = ""
    company_id: str = ""
    company_website: str = ""


class CompanyEnrichmentResult(BaseModel):
    company_updates: Dict[str, Any] = Field(default_factory=dict)
    resolved_company_id: str = ""
    error: Optional[str] = None


class OwnerEnrichmentResult(BaseModel):
    persons: List[EnrichedPerson] = Field(default_factory=list)
    ownership_structure: str = ""
    ownership_data: List[Any] = Field(default_factory=list)
    company_updates: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


def calculate_age(date_of_birth: Optional[str], today: Optional[date] = None) -> Optional[int]:
    """Whole years since an ISO date of birth; None when missing or unparseable"""
    if not date_of_birth:
        return None
    try:
        born = datetime.fromisoformat(date_of_birth[:10]).date()
    except ValueError:
        return None
    today = today or date.today()
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age


def split_name(full_name: str) -> Dict[str, str]:
    """Split a full name, keeping nobiliary particles with the last name"""
    parts = (full_name or "").split()
    if not parts:
        return {"first_name": "", "last_name": ""}
    last_start = len(parts) - 1
    for i, part in enumerate(parts[:-1]):
        if part.lower() in NAME_PREFIXES:
            last_start = i
            break
    return {"first_name": " ".join(parts[:last_start]), "last_name": " ".join(parts[last_start:])}


def normalize_name(name: str) -> str:
    """Lowercase, fold German umlauts and accents, collapse whitespace"""
    if not name:
        return ""
    clean = name.lower()
    for source, target in _UMLAUTS:
        clean = clean.replace(source, target)
    clean = "".join(ch for ch in unicodedata.normalize("NFD", clean) if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", clean).strip()


def parse_company_id(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    company = data.get("company") or {}
    register = data.get("register") or {}
    return (
        data.get("company_id") or data.get("id") or company.get("id")
        or company.get("company_id") or register.get("company_id") or ""
    )


def parse_owners(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("owners", "results"):
            if isinstance(data.get(key), list):
                return data[key]
    return []


def parse_search_items(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return data.get("results") or data.get("companies") or []
    return []


def resolve_ownership_structure(owners: List[Dict[str, Any]]) -> str:
    """Classify owners as legal persons, natural persons or both"""
    if not owners:
        return "No Owners"
    has_legal = any(o.get("type") == "legal_person" or o.get("legal_person") for o in owners)
    has_natural = any(o.get("type") == "natural_person" or o.get("natural_person") for o in owners)
    if has_legal and has_natural:
        return "Legal/Natural Person"
    if has_legal:
        return "Legal Person"
    if has_natural:
        return "Natural Person"
    return "Unknown"


def extract_directors(company: Dict[str, Any], context: Dict[str, str]) -> List[EnrichedPerson]:
    """Active representatives (no end date) from company details"""
    persons = []
    for rep in company.get("representation") or []:
        if rep.get("end_date") is not None:
            continue
        natural = rep.get("natural_person") or {}
        full_name = rep.get("name") or natural.get("full_name") or ""
        split = split_name(full_name)
        dob = natural.get("date_of_birth") or ""
        persons.append(EnrichedPerson(
            full_name=full_name,
            first_name=natural.get("first_name") or split["first_name"],
            last_name=natural.get("last_name") or split["last_name"],
            role=rep.get("role") or "DIRECTOR",
            type=rep.get("type") or "natural_person",
            date_of_birth=dob,
            age=calculate_age(dob),
            **context
        ))
    return persons


def extract_owners(owners_data: Any, context: Dict[str, str]) -> List[EnrichedPerson]:
    """Shareholders from an /owners response"""
    persons = []
    for owner in parse_owners(owners_data):
        natural = owner.get("natural_person") or {}
        legal = owner.get("legal_person") or {}
        owner_type = owner.get("type") or (
            "natural_person" if natural.get("full_name") else "legal_person" if legal.get("name") else "unknown"
        )
        full_name = natural.get("full_name") or owner.get("name") or legal.get("name") or ""
        split = split_name(full_name)
        dob = natural.get("date_of_birth") or ""
        persons.append(EnrichedPerson(
            full_name=full_name,
            first_name=natural.get("first_name") or split["first_name"],
            last_name=natural.get("last_name") or split["last_name"],
            role="Owner",
            type=owner_type,
            percentage_share=owner.get("percentage_share"),
            date_of_birth=dob,
            age=calculate_age(dob),
            **context
        ))
    return persons


def merge_persons(directors: List[EnrichedPerson], owners: List[EnrichedPerson]) -> List[EnrichedPerson]:
    """Merge people appearing in both lists by normalized name; roles join with ' & '"""
    merged: Dict[str, EnrichedPerson] = {}
    for person in [*directors, *owners]:
        key = normalize_name(person.full_name)
        if not key:
            continue
        existing = merged.get(key)
        if existing is None:
            merged[key] = person.model_copy()
            continue
        if person.role and existing.role != person.role and person.role not in existing.role:
            existing.role = f"{existing.role} & {person.role}"
        for name in ("first_name", "last_name", "date_of_birth", "type"):
            if not getattr(existing, name) and getattr(person, name):
                setattr(existing, name, getattr(person, name))
        if existing.age is None and person.age is not None:
            existing.age = person.age
        if existing.percentage_share is None and person.percentage_share is not None:
            existing.percentage_share = person.percentage_share
    return list(merged.values())


def _cell_text(row: Row, column_id: Optional[str]) -> str:
    if not column_id:
        return ""
    return stringify_value(row.get(column_id)).strip()


def _company_updates(company: Dict[str, Any], company_id: str, fallback_website: str) -> Dict[str, str]:
    indicators = company.get("indicators") or [{}]
    latest = indicators[0] or {}
    address = company.get("address") or {}
    return {
        "company_id": company_id,
        "company_name": (company.get("name") or {}).get("name") or "",
        "company_website": (company.get("contact") or {}).get("website_url") or fallback_website or "",
        "legal_form": company.get("legal_form") or "",
        "address_street": address.get("street") or "",
        "address_postal_code": address.get("postal_code") or "",
        "address_city": address.get("city") or "",
        "employees": stringify_value(latest.get("employees")),
        "net_income": stringify_value(latest.get("net_income")),
        "financial_data_date": latest.get("date") or "",
    }


class OpenRegisterService:
    """Service for the OpenRegister company registry API"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key if api_key is not None else settings.OPEN_REGISTER_API_KEY
        self.base_url = (base_url or settings.OPEN_REGISTER_BASE_URL).rstrip("/")
        self.session = session or requests.Session()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self.api_key:
            raise OpenRegisterError("OPEN_REGISTER_API_KEY not configured")

        query = {k: v for k, v in (params or {}).items() if v not in (None, "")}
        try:
            response = await asyncio.to_thread(
                self.session.get,
                f"{self.base_url}{path}",
                params=query,
                headers={"Authorization": self.api_key, "Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            raise OpenRegisterError(f"OpenRegister request failed: {e}") from e

        if "application/json" in response.headers.get("content-type", ""):
            raw = response.json()
        else:
            raw = response.text

        if not response.ok:
            message = raw if isinstance(raw, str) else json.dumps(raw)
            raise OpenRegisterError(f"OpenRegister {response.status_code}: {message}")
        return raw

    async def search_company(self, query: str, per_page: int = 1) -> Any:
        return await self._get("/v0/search/company", {"query": query, "per_page": per_page})

    async def lookup_by_website(self, url: str) -> Any:
        return await self._get("/v0/search/lookup", {"url": url})

    async def get_company_details(self, company_id: str) -> Dict[str, Any]:
        return await self._get(f"/v1/company/{quote(company_id, safe='')}")

    async def get_company_owners(self, company_id: str) -> Any:
        return await self._get(f"/v1/company/{quote(company_id, safe='')}/owners")

    async def resolve_company_id(self, row: Row, workflow: WorkflowConfig) -> str:
        """
        Find the registry id for a row

        Tries the company id column, then a website lookup, then a name
        search. Lookup and search failures fall through to the next step.

        Returns:
            The company id, or "" when nothing matched
        """
        direct = _cell_text(row, workflow.company_id_column)
        if direct:
            return direct

        website = _cell_text(row, workflow.website_column)
        if website:
            try:
                company_id = parse_company_id(await self.lookup_by_website(website))
                if company_id:
                    return company_id
            except OpenRegisterError as e:
                logger.info(f"Website lookup failed for {website}: {e}")

        name = _cell_text(row, workflow.company_name_column)
        if name:
            try:
                items = parse_search_items(await self.search_company(name, per_page=1))
                if items:
                    company_id = parse_company_id(items[0])
                    if company_id:
                        return company_id
            except OpenRegisterError as e:
                logger.info(f"Name search failed for {name}: {e}")

        return ""

    async def run_company_enrichment(
        self,
        row: Row,
        workflow: WorkflowConfig,
        token: Optional[CancellationToken] = None
    ) -> CompanyEnrichmentResult:
        """Stage 1: resolve the company and fetch its details"""
        try:
            company_id = await self.resolve_company_id(row, workflow)
            if not company_id:
                return CompanyEnrichmentResult(error="Could not resolve company (need website or company name)")

            if token:
                token.raise_if_cancelled()
            company = await self.get_company_details(company_id)
            updates = _company_updates(company, company_id, _cell_text(row, workflow.website_column))
            logger.info(f"Company enrichment for row {row.get('id')} resolved {company_id}")
            return CompanyEnrichmentResult(company_updates=updates, resolved_company_id=company_id)
        except OpenRegisterError as e:
            logger.error(f"Company enrichment failed for row {row.get('id')}: {e}")
            return CompanyEnrichmentResult(error=str(e))

    async def run_owner_enrichment(
        self,
        row: Row,
        workflow: WorkflowConfig,
        token: Optional[CancellationToken] = None
    ) -> OwnerEnrichmentResult:
        """
        Stage 2: directors and owners for a company resolved in stage 1

        Args:
            row: Row carrying the company id
            workflow: Column mapping and Prokurist option
            token: Batch cancellation token

        Returns:
            Merged persons plus ownership fields for the company row
        """
        company_id = _cell_text(row, workflow.company_id_column) or _cell_text(row, "company_id")
        if not company_id:
            return OwnerEnrichmentResult(error="No company_id available. Run Company Enrichment first.")

        try:
            if token:
                token.raise_if_cancelled()
            company = await self.get_company_details(company_id)
        except OpenRegisterError as e:
            logger.error(f"Owner enrichment failed for row {row.get('id')}: {e}")
            return OwnerEnrichmentResult(error=str(e))

        context = {
            "company_name": (company.get("name") or {}).get("name") or _cell_text(row, "company_name"),
            "company_id": company_id,
            "company_website": (
                (company.get("contact") or {}).get("website_url")
                or _cell_text(row, workflow.website_column)
                or _cell_text(row, "company_website")
            ),
        }
        register_id = (company.get("register") or {}).get("company_id") or company_id
        legal_form = (company.get("legal_form") or _cell_text(row, "legal_form")).lower()

        directors = extract_directors(company, context)
        for director in directors:
            if director.role == "DIRECTOR":
                director.role = "Managing Director"
        if not workflow.include_prokurist:
            directors = [d for d in directors if "prokurist" not in d.role.lower()]

        owners: List[EnrichedPerson] = []
        owners_list: List[Any] = []
        updates: Dict[str, Any] = {}

        if legal_form == "ag":
            structure = AG_OWNERSHIP
            updates["ownership_structure"] = structure
        else:
            try:
                if token:
                    token.raise_if_cancelled()
                owners_response = await self.get_company_owners(register_id)
                owners_list = parse_owners(owners_response)
                owners = extract_owners(owners_response, context)
                structure = resolve_ownership_structure(owners_list)
                updates["ownership_structure"] = structure
                updates["ownership_data"] = json.dumps(owners_list)
            except OpenRegisterError as e:
                logger.warning(f"Could not fetch owners for {register_id}: {e}")
                structure = "Error fetching owners"
                updates["ownership_structure"] = structure

        return OwnerEnrichmentResult(
            persons=merge_persons(directors, owners),
            ownership_structure=structure,
            ownership_data=owners_list,
            company_updates=updates,
        )


# Global instance
_open_register_service: Optional[OpenRegisterService] = None


def get_open_register_service() -> OpenRegisterService:
    """Get or create global OpenRegister service instance"""
    global _open_register_service
    if _open_register_service is None:
        _open_register_service = OpenRegisterService()
    return _open_register_service
