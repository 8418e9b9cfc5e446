"""In-memory stand-in for the yield dashboard REST API.

Serves every endpoint the client consumes with Django REST style payloads,
so the dashboard and the integration tests run without the real backend.
"""

import logging
import random
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import uvicorn
from fastapi import Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from agridash.settings import get_settings

DEMO_USERNAME = "admin"
DEMO_PASSWORD = "Admin1234"

MAX_PAGE_SIZE = 100
SEARCH_FIELDS = ("crop_name", "variety", "region", "country")
FILTER_FIELDS = ("country", "status", "crop_name")
ORDERING_FIELDS = (
    "id",
    "crop_name",
    "variety",
    "region",
    "country",
    "status",
    "planting_date",
    "yield_amount",
)

_CROPS = {
    "Wheat": ("Triticum aestivum", ["Durum", "Spelt", "Red Winter"]),
    "Maize": ("Zea mays", ["Dent", "Flint", "Sweet"]),
    "Rice": ("Oryza sativa", ["Basmati", "Jasmine", "Arborio"]),
    "Soybean": ("Glycine max", ["Williams 82", "Harosoy"]),
    "Barley": ("Hordeum vulgare", ["Two-row", "Six-row"]),
}
_REGIONS = {
    "USA": ["Iowa", "Kansas", "Nebraska"],
    "Canada": ["Saskatchewan", "Alberta", "Manitoba"],
    "Brazil": ["Mato Grosso", "Parana"],
    "India": ["Punjab", "Haryana"],
    "Turkey": ["Konya", "Adana"],
}
_STATUSES = ["planned", "planted", "growing", "flowering", "harvested", "failed"]


def setup_server_logging() -> logging.Logger:
    """Configure and return the mock server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("agridash.mock_api")
    if logger.handlers:
        return logger

    logger.setLevel(get_settings().log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


LOGGER = setup_server_logging()


def seed_crops(count: int = 500, seed: int = 42) -> List[Dict[str, Any]]:
    """Generate deterministic crop detail records."""
    rng = random.Random(seed)
    start = date(2023, 1, 1)
    crops: List[Dict[str, Any]] = []
    for n in range(1, count + 1):
        crop_name = rng.choice(sorted(_CROPS))
        scientific_name, varieties = _CROPS[crop_name]
        country = rng.choice(sorted(_REGIONS))
        crop_status = rng.choice(_STATUSES)
        planted = start + timedelta(days=rng.randint(0, 700))
        harvested = crop_status == "harvested"
        stamp = f"{planted.isoformat()}T08:00:00Z"
        crops.append(
            {
                "id": str(n),
                "crop_name": crop_name,
                "variety": rng.choice(varieties),
                "planting_date": planted.isoformat(),
                "status": crop_status,
                "yield_amount": round(rng.uniform(1500, 9000), 1) if harvested else None,
                "country": country,
                "region": rng.choice(_REGIONS[country]),
                "scientific_name": scientific_name,
                "field_id": f"F-{rng.randint(100, 999)}",
                "plot_number": str(rng.randint(1, 40)),
                "latitude": f"{rng.uniform(-30, 55):.4f}",
                "longitude": f"{rng.uniform(-120, 80):.4f}",
                "soil_type": rng.choice(["loam", "clay", "sandy", "silt"]),
                "irrigation_type": rng.choice(["drip", "sprinkler", "rainfed", "flood"]),
                "growing_season": rng.choice(["spring", "summer", "autumn", "winter"]),
                "expected_harvest_date": (planted + timedelta(days=120)).isoformat(),
                "actual_harvest_date": (planted + timedelta(days=125)).isoformat() if harvested else None,
                "yield_quality_grade": rng.choice(["A", "B", "C"]) if harvested else None,
                "plant_height_cm": str(rng.randint(30, 250)),
                "fertilizer_type": rng.choice(["NPK", "urea", "compost"]),
                "fertilizer_amount_kg": str(rng.randint(50, 400)),
                "pesticide_applied": rng.random() < 0.4,
                "pesticide_type": None,
                "avg_temperature_c": f"{rng.uniform(8, 32):.1f}",
                "total_rainfall_mm": f"{rng.uniform(200, 1400):.0f}",
                "researcher_name": rng.choice(["A. Yilmaz", "J. Smith", "P. Singh", "M. Costa"]),
                "notes": "",
                "created_at": stamp,
                "updated_at": stamp,
            }
        )
    return crops


@dataclass
class MockBackend:
    """Users, tokens and crop records held in memory."""

    access_ttl_seconds: int = 300
    crops: List[Dict[str, Any]] = field(default_factory=seed_crops)
    users: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    access_tokens: Dict[str, Tuple[str, float]] = field(default_factory=dict)
    refresh_tokens: Dict[str, str] = field(default_factory=dict)
    submissions: List[Dict[str, Any]] = field(default_factory=list)
    refresh_calls: int = 0

    def __post_init__(self) -> None:
        if not self.users:
            self.add_user(DEMO_USERNAME, DEMO_PASSWORD, email="admin@example.com", first_name="Admin")

    def add_user(self, username: str, password: str, **profile: Any) -> Dict[str, Any]:
        user = {
            "id": len(self.users) + 1,
            "username": username,
            "email": profile.get("email", f"{username}@example.com"),
            "first_name": profile.get("first_name", ""),
            "last_name": profile.get("last_name", ""),
        }
        self.users[username] = {"password": password, "profile": user}
        return user

    def issue_access(self, username: str) -> str:
        token = uuid.uuid4().hex
        self.access_tokens[token] = (username, time.monotonic() + self.access_ttl_seconds)
        return token

    def issue_refresh(self, username: str) -> str:
        token = uuid.uuid4().hex
        self.refresh_tokens[token] = username
        return token

    def expire_access_tokens(self) -> None:
        """Invalidate every access token, as if they all timed out."""
        self.access_tokens.clear()

    def user_for_access(self, token: str) -> Optional[Dict[str, Any]]:
        entry = self.access_tokens.get(token)
        if entry is None:
            return None
        username, expires_at = entry
        if time.monotonic() >= expires_at:
            del self.access_tokens[token]
            return None
        return self.users[username]["profile"]

    def query_crops(
        self,
        search: str = "",
        ordering: str = "",
        filters: Optional[Dict[str, List[str]]] = None,
    ) -> List[Dict[str, Any]]:
        rows = self.crops
        if search:
            needle = search.lower()
            rows = [r for r in rows if any(needle in str(r[f]).lower() for f in SEARCH_FIELDS)]
        for key, allowed in (filters or {}).items():
            rows = [r for r in rows if r.get(key) in allowed]
        if ordering:
            descending = ordering.startswith("-")
            key = ordering.lstrip("-")
            if key in ORDERING_FIELDS:
                rows = sorted(rows, key=lambda r: _sort_key(r, key), reverse=descending)
        return rows


def _sort_key(row: Dict[str, Any], key: str) -> Tuple[int, Any]:
    value = row.get(key)
    if value is None:
        return (1, 0)
    if key == "id":
        return (0, int(value))
    return (0, value)


class LoginBody(BaseModel):
    username: str = ""
    password: str = ""


class RefreshBody(BaseModel):
    refresh: Optional[str] = None


def _unauthorized(detail: str, code: str | None = None) -> HTTPException:
    body: Any = detail if code is None else {"detail": detail, "code": code}
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=body,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_app(backend: MockBackend | None = None) -> FastAPI:
    """Build the mock API around backend (a fresh one by default)."""
    settings = get_settings()
    backend = backend or MockBackend(access_ttl_seconds=settings.mock_access_token_ttl_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        LOGGER.info(
            "Mock API ready: %d crops, demo login %s/%s",
            len(backend.crops),
            DEMO_USERNAME,
            DEMO_PASSWORD,
        )
        yield
        LOGGER.info("Shutting down...")

    app = FastAPI(title="Agri Dashboard Mock API", version="0.1.0", lifespan=lifespan)
    app.state.backend = backend

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HTTPException)
    async def drf_style_errors(request: Request, exc: HTTPException) -> JSONResponse:
        # Dict details are sent as the body itself, the way DRF does.
        content = exc.detail if isinstance(exc.detail, dict) else {"detail": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    def current_user(request: Request) -> Dict[str, Any]:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise _unauthorized("Authentication credentials were not provided.")
        user = backend.user_for_access(token)
        if user is None:
            raise _unauthorized("Given token not valid for any token type", "token_not_valid")
        return user

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok"}

    @app.post("/api/auth/login/")
    async def login(body: LoginBody) -> Dict[str, Any]:
        account = backend.users.get(body.username)
        if account is None or account["password"] != body.password:
            LOGGER.info("Rejected login for %s", body.username or "<empty>")
            raise _unauthorized("No active account found with the given credentials")
        LOGGER.info("Login %s", body.username)
        return {
            "access": backend.issue_access(body.username),
            "refresh": backend.issue_refresh(body.username),
            "user": account["profile"],
        }

    @app.get("/api/auth/user/")
    async def user_profile(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
        return user

    @app.post("/api/auth/logout/")
    async def logout(body: RefreshBody, user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
        if body.refresh:
            backend.refresh_tokens.pop(body.refresh, None)
        LOGGER.info("Logout %s", user["username"])
        return {"detail": "Successfully logged out."}

    @app.post("/api/auth/token/refresh/")
    async def refresh(body: RefreshBody) -> Dict[str, Any]:
        backend.refresh_calls += 1
        username = backend.refresh_tokens.pop(body.refresh or "", None)
        if username is None:
            raise _unauthorized("Token is invalid or expired", "token_not_valid")
        # Rotation: the old refresh token is spent.
        return {
            "access": backend.issue_access(username),
            "refresh": backend.issue_refresh(username),
        }

    @app.post("/api/auth/signup/", status_code=status.HTTP_201_CREATED)
    async def signup(payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        errors: Dict[str, List[str]] = {}
        for name in ("username", "email", "password", "password_confirm", "first_name", "last_name"):
            if not payload.get(name):
                errors[name] = ["This field is required."]
        if payload.get("username") in backend.users:
            errors["username"] = ["A user with that username already exists."]
        if payload.get("password") and payload.get("password") != payload.get("password_confirm"):
            errors["password_confirm"] = ["Password fields didn't match."]
        if errors:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=errors)
        user = backend.add_user(
            payload["username"],
            payload["password"],
            email=payload["email"],
            first_name=payload["first_name"],
            last_name=payload["last_name"],
        )
        LOGGER.info("Signup %s", user["username"])
        return user

    @app.get("/api/table/data/")
    async def table_data(request: Request, user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
        query = request.query_params
        try:
            page = int(query.get("page", "1"))
            page_size = min(int(query.get("page_size", "10")), MAX_PAGE_SIZE)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invalid page.")
        filters = {
            key: [v for v in query[key].split(",") if v]
            for key in FILTER_FIELDS
            if query.get(key)
        }
        rows = backend.query_crops(
            search=query.get("search", ""),
            ordering=query.get("ordering", ""),
            filters=filters,
        )
        start = (page - 1) * page_size
        if page < 1 or page_size < 1 or (start >= len(rows) and page != 1):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invalid page.")
        return {"count": len(rows), "results": rows[start : start + page_size]}

    @app.get("/api/crops/{crop_id}/")
    async def crop_detail(crop_id: str, user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
        for row in backend.crops:
            if row["id"] == crop_id:
                return row
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found.")

    @app.post("/api/form/submit/", status_code=status.HTTP_201_CREATED)
    async def form_submit(
        payload: Dict[str, Any] = Body(...),
        user: Dict[str, Any] = Depends(current_user),
    ) -> Dict[str, Any]:
        errors: Dict[str, List[str]] = {}
        for name in ("full_name", "email", "contact_method"):
            if not payload.get(name):
                errors[name] = ["This field is required."]
        if payload.get("agree_terms") is not True:
            errors["agree_terms"] = ["You must accept the terms."]
        if any(s["email"] == payload.get("email") for s in backend.submissions):
            errors["email"] = ["An entry with this email already exists."]
        if errors:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"details": errors})
        entry = {"id": len(backend.submissions) + 1, **payload}
        entry.pop("password", None)
        backend.submissions.append(entry)
        LOGGER.info("Form submission %d by %s", entry["id"], user["username"])
        return {"id": entry["id"]}

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(app, host=settings.mock_api_host, port=settings.mock_api_port)
