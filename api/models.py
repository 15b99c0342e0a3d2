"""
Pydantic request/response models for the API.

Request bodies for the grant search keep the camelCase keys the browser
client sends (``searchTerms``, ``sortConfig``, ``totalPages`` ...). Unknown
keys are ignored. Optional response fields default to None so rows with
NULL columns still validate.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils.config import (
    DEFAULT_PAGE_SIZE, FILTER_LIMITS, MAX_NOTE_LENGTH, MAX_PAGE, MAX_PAGE_SIZE,
)
from utils.formatting import parse_date


# ── Grant search request ──────────────────────────────────────────────────────

class SearchTerms(BaseModel):
    """Free-text terms, each matched as a case-insensitive substring."""
    recipient: str | None = Field(None, max_length=200, description="Recipient legal name", examples=["University of Toronto"])
    institute: str | None = Field(None, max_length=200, description="Host institute name", examples=["McGill"])
    grant: str | None = Field(None, max_length=200, description="Agreement title", examples=["quantum"])


class DateRange(BaseModel):
    """Inclusive bounds on agreement_start_date (ISO YYYY-MM-DD)."""
    model_config = ConfigDict(populate_by_name=True)

    date_from: str | None = Field(None, alias="from", description="Earliest start date", examples=["2018-01-01"])
    date_to: str | None = Field(None, alias="to", description="Latest start date", examples=["2023-12-31"])

    @field_validator("date_from", "date_to", mode="before")
    @classmethod
    def _iso_date(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        parsed = parse_date(value)
        if parsed is None:
            raise ValueError(f"invalid date {value!r}, expected YYYY-MM-DD")
        return parsed.isoformat()


class ValueRange(BaseModel):
    """Bounds on agreement_value in CAD."""
    min: float | None = Field(None, ge=0, description="Applied only when greater than 0", examples=[50000])
    max: float | None = Field(None, ge=0, description="Applied only when below the 200M filter ceiling", examples=[1000000])


class SearchFilters(BaseModel):
    dateRange: DateRange = Field(default_factory=DateRange)
    valueRange: ValueRange = Field(default_factory=ValueRange)
    agencies: list[str] = Field(default_factory=list, description="Agency codes", examples=[["NSERC", "CIHR"]])
    countries: list[str] = Field(default_factory=list, examples=[["CA"]])
    provinces: list[str] = Field(default_factory=list, examples=[["ON", "QC"]])
    cities: list[str] = Field(default_factory=list, examples=[["Toronto"]])

    def is_active(self) -> bool:
        """True if any filter would narrow a search."""
        return bool(
            self.dateRange.date_from or self.dateRange.date_to
            or (self.valueRange.min or 0) > 0
            or (self.valueRange.max is not None
                and self.valueRange.max < FILTER_LIMITS["value_max"])
            or self.agencies or self.countries or self.provinces or self.cities
        )


class SortConfig(BaseModel):
    """Sort request; unknown fields fall back to agreement_start_date."""
    field: str = Field("agreement_start_date", examples=["agreement_value"])
    direction: str = Field("desc", description="'asc' sorts ascending; anything else descending", examples=["desc"])


class PageRequest(BaseModel):
    page: int = Field(1, ge=1, le=MAX_PAGE, examples=[1])
    limit: int = Field(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, examples=[20])


class GrantSearchRequest(BaseModel):
    """Body for POST /api/grants."""
    searchTerms: SearchTerms = Field(default_factory=SearchTerms)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    sortConfig: SortConfig = Field(default_factory=SortConfig)
    pagination: PageRequest = Field(default_factory=PageRequest)
    format: Literal["full", "visualization"] = Field("full", description="'visualization' returns flat chart rows without pagination")


# ── Grant responses ───────────────────────────────────────────────────────────

class ValueChangeOut(BaseModel):
    """Funding change from the previous version of an agreement."""
    previous_value: float = Field(..., examples=[200000.0])
    change: float = Field(..., examples=[50000.0])
    percent_change: float | None = Field(None, examples=[25.0])


class AmendmentOut(BaseModel):
    """One version of a grant agreement."""
    amendment_number: int = Field(..., examples=[2])
    amendment_date: str | None = Field(None, examples=["2021-06-15"])
    agreement_value: float | None = Field(None, examples=[150000.0])
    agreement_start_date: str | None = None
    agreement_end_date: str | None = None
    additional_information_en: str | None = None
    value_change: ValueChangeOut | None = None


class GrantOut(BaseModel):
    """A grant row joined with its recipient, institute, program and agency."""
    grant_id: int = Field(..., examples=[1042])
    ref_number: str = Field(..., examples=["149-2019-2020-Q4-00347"])
    latest_amendment_number: int | None = Field(None, examples=[1])
    amendment_date: str | None = None
    agreement_type: str | None = None
    agreement_number: str | None = None
    agreement_value: float | None = Field(None, description="Value in CAD", examples=[125000.0])
    foreign_currency_type: str | None = None
    foreign_currency_value: float | None = None
    agreement_start_date: str | None = Field(None, examples=["2020-04-01"])
    agreement_end_date: str | None = Field(None, examples=["2025-03-31"])
    agreement_title_en: str | None = Field(None, examples=["Quantum materials for energy storage"])
    description_en: str | None = None
    expected_results_en: str | None = None
    additional_information_en: str | None = None
    org: str | None = Field(None, examples=["NSERC"])
    org_title_en: str | None = None
    recipient_id: int | None = None
    legal_name: str | None = Field(None, examples=["Jane Doe"])
    operating_name: str | None = None
    recipient_type: str | None = None
    institute_id: int | None = None
    research_organization_name: str | None = Field(None, description="Host institute name", examples=["University of Waterloo"])
    city: str | None = None
    province: str | None = None
    country: str | None = None
    prog_id: int | None = None
    prog_title_en: str | None = None
    prog_purpose_en: str | None = None
    is_bookmarked: bool = False
    amendments: list[AmendmentOut] = Field(default_factory=list, description="Versions, newest first")


class PaginationOut(BaseModel):
    total: int = Field(..., examples=[1234])
    page: int = Field(..., examples=[1])
    limit: int = Field(..., examples=[20])
    totalPages: int = Field(..., description="ceil(total / limit)", examples=[62])


class GrantSearchResponse(BaseModel):
    data: list[GrantOut]
    pagination: PaginationOut


class VisualizationRow(BaseModel):
    """Flat grant row used for chart aggregation on the client."""
    grant_id: int
    agreement_value: float | None = None
    agreement_start_date: str | None = None
    agreement_end_date: str | None = None
    org: str | None = None
    prog_title_en: str | None = None
    legal_name: str | None = None
    recipient_type: str | None = None
    research_organization_name: str | None = None
    city: str | None = None
    province: str | None = None
    country: str | None = None


class VisualizationResponse(BaseModel):
    data: list[VisualizationRow]


# ── Entities ──────────────────────────────────────────────────────────────────

class EntityStats(BaseModel):
    grant_count: int = Field(0, examples=[37])
    total_funding: float = Field(0.0, examples=[4_250_000.0])
    avg_funding: float = Field(0.0, examples=[114_864.86])
    first_grant_date: str | None = None
    latest_grant_date: str | None = None
    funding_agencies_count: int = 0


class RecipientOut(EntityStats):
    recipient_id: int
    legal_name: str
    operating_name: str | None = None
    type: str | None = Field(None, description="Recipient type code", examples=["S"])
    recipient_type_label: str | None = Field(None, examples=["Academia"])
    institute_id: int | None = None
    research_organization_name: str | None = None
    city: str | None = None
    province: str | None = None
    country: str | None = None
    is_bookmarked: bool = False


class InstituteOut(EntityStats):
    institute_id: int
    name: str
    city: str | None = None
    province: str | None = None
    country: str | None = None
    postal_code: str | None = None
    recipient_count: int = 0
    is_bookmarked: bool = False


class RecipientListResponse(BaseModel):
    data: list[RecipientOut]
    pagination: PaginationOut


class InstituteListResponse(BaseModel):
    data: list[InstituteOut]
    pagination: PaginationOut


# ── Bookmarks ─────────────────────────────────────────────────────────────────

class BookmarkToggleOut(BaseModel):
    success: bool = True
    isBookmarked: bool


class NoteUpdate(BaseModel):
    note: str | None = Field(None, description=f"Up to {MAX_NOTE_LENGTH} characters; blank clears the note")


class NoteOut(BaseModel):
    success: bool = True
    notes: str | None = None


# ── Search history ────────────────────────────────────────────────────────────

class HistorySaveRequest(BaseModel):
    searchTerms: SearchTerms = Field(default_factory=SearchTerms)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    resultCount: int = Field(0, ge=0)


class HistorySaveOut(BaseModel):
    saved: bool
    search_id: int | None = None


class SearchHistoryOut(BaseModel):
    search_id: int
    search_terms: dict[str, Any] = Field(default_factory=dict, description="recipient / institute / grant terms")
    filters: dict[str, Any] = Field(default_factory=dict)
    result_count: int = 0
    searched_at: str
    is_bookmarked: bool = False
    notes: str | None = None


class SearchHistoryPage(BaseModel):
    data: list[SearchHistoryOut]
    pagination: PaginationOut


class PopularSearchOut(BaseModel):
    text: str
    count: int
    category: str


# ── Accounts ──────────────────────────────────────────────────────────────────

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., max_length=254)
    password: str
    confirmPassword: str


class LoginRequest(BaseModel):
    email: str
    password: str
    rememberMe: bool = False


class ProfileUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    email: str | None = Field(None, max_length=254)


class PasswordChange(BaseModel):
    currentPassword: str
    newPassword: str
    confirmPassword: str


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str
    password: str
    confirmPassword: str


class DeleteAccountRequest(BaseModel):
    confirmation: str
    email: str
    password: str


class UserOut(BaseModel):
    id: int
    name: str
    email: str
    email_verified_at: str | None = None
    pending_email: str | None = None
    created_at: str | None = None


class MessageOut(BaseModel):
    success: bool = True
    message: str


class SessionOut(BaseModel):
    id: int = Field(..., description="Session row id used for revocation; never the cookie token")
    user_agent: str | None = None
    ip_address: str | None = None
    location: str | None = None
    created_at: str
    last_active_at: str
    expires_at: str
    is_current: bool = False


# ── Errors ────────────────────────────────────────────────────────────────────

class ErrorResponse(BaseModel):
    """Standard error envelope."""
    error: str = Field(..., examples=["Invalid request"])
    details: list[dict[str, Any]] | None = None
    status_code: int = Field(..., examples=[400])
