from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

SortOrder = Literal["ascend", "descend"]

PAGE_SIZE_OPTIONS = (10, 25, 50, 100)
DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 10


# --- API records ---


class User(BaseModel):
    """Profile returned by the current-user and login endpoints."""

    model_config = ConfigDict(extra="allow")

    id: int
    username: str
    email: str
    first_name: str | None = None
    last_name: str | None = None


class LoginResponse(BaseModel):
    access: str
    refresh: str
    user: User


class CropRecord(BaseModel):
    """One row of the yield table."""

    model_config = ConfigDict(extra="allow")

    id: str
    crop_name: str
    variety: str = ""
    planting_date: str = ""
    status: Literal["planned", "planted", "growing", "flowering", "harvested", "failed"]
    yield_amount: float | None = None
    country: str = ""
    region: str = ""


class CropDetail(CropRecord):
    """Full record served by the detail endpoint."""

    scientific_name: str | None = None
    field_id: str | None = None
    plot_number: str | None = None
    latitude: str | None = None
    longitude: str | None = None
    soil_type: str | None = None
    irrigation_type: str | None = None
    growing_season: str | None = None
    expected_harvest_date: str | None = None
    actual_harvest_date: str | None = None
    yield_quality_grade: str | None = None
    plant_height_cm: str | None = None
    fertilizer_type: str | None = None
    fertilizer_amount_kg: str | None = None
    pesticide_applied: bool | None = None
    pesticide_type: str | None = None
    avg_temperature_c: str | None = None
    total_rainfall_mm: str | None = None
    researcher_name: str | None = None
    notes: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class CropPage(BaseModel):
    results: List[CropRecord]
    count: int


class FilterOptions(BaseModel):
    countries: List[str] = []
    crops: List[str] = []
    statuses: List[str] = []


# --- Client-side state ---


@dataclass
class Session:
    """Credentials plus the user resolved from them at startup."""

    access_token: str | None = None
    refresh_token: str | None = None
    user: User | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None


@dataclass(frozen=True)
class ViewState:
    """Table pagination/sort/filter/search configuration mirrored in the URL."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    search_term: str = ""
    sort_field: Optional[str] = None
    sort_order: Optional[SortOrder] = None
    filters: Dict[str, FrozenSet[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class TablePagination:
    current: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE


@dataclass(frozen=True)
class SortSpec:
    """Sort reported by the table widget; an order of None means unsorted."""

    field: Optional[str] = None
    order: Optional[SortOrder] = None


@dataclass
class TableState:
    """What the dashboard currently displays."""

    rows: List[CropRecord] = field(default_factory=list)
    total: int = 0
    loading: bool = False
    error: str | None = None
