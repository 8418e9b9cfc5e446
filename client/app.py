import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, TypeVar

import httpx
from pydantic import ValidationError
import streamlit as st

from agridash.errors import ApiError, FormValidationError, LogoutError, describe_error
from agridash.models import CropPage, PAGE_SIZE_OPTIONS, SortSpec, TablePagination, ViewState
from agridash.query_state import QueryStateStore, encode_query, parse_query
from agridash.services import (
    ApiClient,
    AuthService,
    CropService,
    FormService,
    RegisterData,
    SessionManager,
    TableLoader,
    get_session_store,
    validate_entry,
    validate_form,
)
from agridash.services.preferences import get_theme, toggle_theme
from agridash.settings import get_settings

T = TypeVar("T")

SORTABLE_COLUMNS = {
    "id": "ID",
    "crop_name": "Crop",
    "variety": "Variety",
    "region": "Region",
    "country": "Country",
    "status": "Status",
    "planting_date": "Date",
    "yield_amount": "Yield (kg/ha)",
}

DARK_CSS = """
<style>
.stApp { background-color: #09090b; color: #e4e4e7; }
</style>
"""


def setup_client_logging() -> logging.Logger:
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("agridash")
    if logger.handlers:
        return logger

    logger.setLevel(get_settings().log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "client.log", maxBytes=2_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    return logger


LOGGER = setup_client_logging()
STORE = get_session_store()


class StreamlitLocation:
    """The browser address bar, via st.query_params."""

    def get_query(self) -> str:
        return encode_query(st.query_params.to_dict())

    def replace_query(self, query: str) -> None:
        st.query_params.from_dict(parse_query(query))


@dataclass
class Services:
    client: ApiClient
    auth: AuthService
    crops: CropService
    forms: FormService


def _on_session_expired() -> None:
    """Redirect to the login view once refresh has failed."""
    LOGGER.info("Session expired; redirecting to login")
    st.session_state["user"] = None
    st.session_state["route"] = "login"
    st.session_state["flash"] = ("warning", "Your session has expired. Please log in again.")


@asynccontextmanager
async def open_services() -> AsyncIterator[Services]:
    async with ApiClient(STORE, on_session_expired=_on_session_expired) as client:
        yield Services(client, AuthService(client), CropService(client), FormService(client))


def run(fn: Callable[[Services], Awaitable[T]]) -> T:
    """Run one UI action against a fresh client on its own event loop."""

    async def _main() -> T:
        async with open_services() as services:
            return await fn(services)

    return asyncio.run(_main())


async def fetch_page(view: ViewState) -> CropPage:
    async with open_services() as services:
        return await services.crops.fetch_crops(view)


def session_manager(services: Services) -> SessionManager:
    manager = SessionManager(services.auth, STORE)
    user = st.session_state.get("user")
    if user is not None:
        manager.session.user = user
    return manager


def go(route: str) -> None:
    st.session_state["route"] = route
    st.rerun()


def show_flash() -> None:
    flash = st.session_state.pop("flash", None)
    if flash:
        kind, text = flash
        getattr(st, kind)(text)


def show_field_errors(errors: Dict[str, List[str]]) -> None:
    for name, messages in errors.items():
        for message in messages:
            st.error(f"{name}: {message}")


# --- Pages ---


def login_page() -> None:
    st.title("Agri-Dashboard")
    st.caption("Sign in to continue")
    with st.form("login"):
        username = st.text_input("Username")
        password = st.text_input("Password", type="password")
        submitted = st.form_submit_button("Log in", use_container_width=True)
    if submitted:
        if not username or not password:
            st.error("Please input your username and password.")
            return
        try:
            session = run(lambda s: session_manager(s).login(username, password))
        except (ApiError, httpx.RequestError, ValidationError) as e:
            LOGGER.info("Login failed for %s", username)
            st.error(describe_error(e, "Login failed."))
            return
        st.session_state["user"] = session.user
        st.session_state["flash"] = ("success", "Login successful!")
        go("dashboard")
    if st.button("Create an account"):
        go("signup")


def signup_page() -> None:
    st.title("Create Account")
    st.caption("Join Agri-Dashboard today")
    with st.form("signup"):
        values = {
            "username": st.text_input("Username"),
            "first_name": st.text_input("First Name"),
            "last_name": st.text_input("Last Name"),
            "email": st.text_input("Email"),
            "password": st.text_input("Password", type="password"),
            "password_confirm": st.text_input("Confirm Password", type="password"),
        }
        submitted = st.form_submit_button("Sign Up", use_container_width=True)
    if submitted:
        try:
            data = validate_form(RegisterData, values)
            run(lambda s: session_manager(s).signup(data))
        except FormValidationError as e:
            st.error("Please fix the errors below.")
            show_field_errors(e.errors)
            return
        except (ApiError, httpx.RequestError):
            st.error("Registration failed. The API might not allow public signups.")
            return
        st.session_state["flash"] = ("success", "Account created successfully! Please login.")
        go("login")
    if st.button("Already have an account? Login here"):
        go("login")


def _table_controls(store: QueryStateStore, view: ViewState, options: Dict[str, List[str]]) -> None:
    term = st.text_input("Search", value=view.search_term, placeholder="Search 1M+ records...")
    if term != view.search_term:
        store.apply_search(term)
        st.rerun()

    with st.form("table_controls"):
        cols = st.columns(3)
        selected: Dict[str, List[str]] = {}
        for col, key, label in zip(cols, ("country", "crop_name", "status"), ("Country", "Crop", "Status")):
            current = sorted(view.filters.get(key, ()))
            choices = list(dict.fromkeys(options.get(key, []) + current))
            selected[key] = col.multiselect(label, choices, default=current)
        sort_keys = ["", *SORTABLE_COLUMNS]
        left, mid, right = st.columns(3)
        sort_field = left.selectbox(
            "Sort by",
            sort_keys,
            index=sort_keys.index(view.sort_field) if view.sort_field in sort_keys else 0,
            format_func=lambda k: SORTABLE_COLUMNS.get(k, "(none)"),
        )
        sort_order = mid.radio(
            "Order",
            ["ascend", "descend"],
            index=1 if view.sort_order == "descend" else 0,
            horizontal=True,
        )
        page_size = right.selectbox(
            "Rows per page",
            PAGE_SIZE_OPTIONS,
            index=PAGE_SIZE_OPTIONS.index(view.page_size),
        )
        if st.form_submit_button("Apply"):
            sort = SortSpec(field=sort_field or view.sort_field, order=sort_order if sort_field else None)
            page = view.page if page_size == view.page_size else 1
            store.apply_table_change(TablePagination(page, page_size), selected, sort)
            st.rerun()


def _pager(store: QueryStateStore, view: ViewState, total: int) -> None:
    pages = max(1, -(-total // view.page_size))
    current_filters = {k: sorted(v) for k, v in view.filters.items()}
    prev_col, info_col, next_col = st.columns([1, 3, 1])
    if prev_col.button("Previous", disabled=view.page <= 1):
        store.apply_table_change(TablePagination(view.page - 1, view.page_size), current_filters)
        st.rerun()
    info_col.caption(f"Page {view.page} of {pages} ({total:,} records)")
    if next_col.button("Next", disabled=view.page >= pages):
        store.apply_table_change(TablePagination(view.page + 1, view.page_size), current_filters)
        st.rerun()


def _detail_panel(rows: List[Dict[str, Any]]) -> None:
    ids = [row["id"] for row in rows]
    crop_id = st.selectbox("Open record", ["", *ids], format_func=lambda i: i or "(select a row)")
    if not crop_id:
        return
    row = next(r for r in rows if r["id"] == crop_id)
    try:
        detail: Dict[str, Any] = run(lambda s: s.crops.get_crop(crop_id)).model_dump()
    except (ApiError, httpx.RequestError, ValidationError) as e:
        LOGGER.warning("Detail fetch for %s failed: %s", crop_id, e)
        st.error("Failed to load full crop details.")
        detail = row
    with st.expander("Crop Details", expanded=True):
        for key, value in detail.items():
            st.markdown(f"**{key.replace('_', ' ').title()}**: {value if value not in (None, '') else 'N/A'}")


def dashboard_page() -> None:
    store = QueryStateStore(StreamlitLocation(), get_settings().filter_keys)
    view = store.read()

    if "filter_options" not in st.session_state:
        options = run(lambda s: s.crops.fetch_filter_options())
        if not any((options.countries, options.crops, options.statuses)):
            st.warning("Failed to fetch filter options.")
        st.session_state["filter_options"] = {
            "country": options.countries,
            "crop_name": options.crops,
            "status": options.statuses,
        }
    loader: TableLoader = st.session_state.setdefault("table_loader", TableLoader(fetch_page))
    asyncio.run(loader.load(view))
    state = loader.state
    if st.session_state.get("route") != "dashboard":
        # Session expired while loading.
        st.rerun()

    st.title("Yield Overview")
    st.caption(f"{state.total:,} Records Found")
    _table_controls(store, view, st.session_state["filter_options"])
    if state.error:
        st.error(state.error)
    rows = [r.model_dump() for r in state.rows]
    for r in rows:
        r["yield_amount"] = "N/A" if r["yield_amount"] is None else f"{r['yield_amount']:,}"
    st.dataframe(
        rows,
        column_order=list(SORTABLE_COLUMNS),
        column_config=dict(SORTABLE_COLUMNS),
        hide_index=True,
        use_container_width=True,
    )
    _pager(store, view, state.total)
    _detail_panel(rows)


def form_page() -> None:
    st.title("New Entry Form")
    with st.form("entry"):
        values = {
            "fullName": st.text_input("Full Name", placeholder="John Doe"),
            "email": st.text_input("Email", placeholder="john@example.com"),
            "password": st.text_input("Password", type="password"),
            "contactMethod": st.selectbox(
                "Preferred Contact Method",
                ["email", "phone", "both"],
                format_func={"email": "Email Only", "phone": "Phone Only", "both": "Both"}.get,
            ),
            "phone": st.text_input("Phone Number"),
            "age": st.number_input("Age", min_value=1, max_value=150, value=None, step=1),
            "country": st.text_input("Country"),
            "website": st.text_input("Website"),
            "bio": st.text_area("Bio", max_chars=500),
            "agreeTerms": st.checkbox("I agree to the Terms"),
        }
        submitted = st.form_submit_button("Submit", use_container_width=True)
    if not submitted:
        return
    try:
        form = validate_entry(values)
        run(lambda s: s.forms.submit(form))
    except FormValidationError as e:
        st.error("Please fix the validation errors shown below.")
        show_field_errors(e.errors)
        return
    except (ApiError, httpx.RequestError) as e:
        LOGGER.warning("Form submission failed: %s", e)
        st.error("An unexpected server error occurred. Please try again later.")
        return
    st.session_state["flash"] = ("success", "Form submitted successfully!")
    go("dashboard")


def sidebar() -> None:
    user = st.session_state.get("user")
    with st.sidebar:
        st.subheader("Agri-Dashboard")
        if user is not None:
            st.caption(f"Signed in as {user.username}")
            routes = ["dashboard", "form"]
            route = st.radio(
                "Navigate",
                routes,
                index=routes.index(st.session_state.get("route", "dashboard")),
                format_func={"dashboard": "Dashboard", "form": "New Entry"}.get,
            )
            if route != st.session_state.get("route"):
                go(route)
        theme = asyncio.run(get_theme(STORE))
        if st.button("Light mode" if theme == "dark" else "Dark mode"):
            asyncio.run(toggle_theme(STORE))
            st.rerun()
        if user is not None and st.button("Logout"):
            try:
                run(lambda s: session_manager(s).logout())
                st.session_state["flash"] = ("info", "Logged out successfully")
            except LogoutError as e:
                st.session_state["flash"] = ("warning", str(e))
            st.session_state["user"] = None
            st.session_state.pop("table_loader", None)
            go("login")
    if theme == "dark":
        st.markdown(DARK_CSS, unsafe_allow_html=True)


st.set_page_config(page_title="Agri-Dashboard", page_icon="🌾", layout="wide")

if "user" not in st.session_state:
    st.session_state["user"] = run(lambda s: session_manager(s).bootstrap()).user
    st.session_state["route"] = "dashboard" if st.session_state["user"] else "login"

route = st.session_state.get("route", "login")
if route in ("dashboard", "form") and st.session_state["user"] is None:
    route = "login"
    st.session_state["route"] = route

sidebar()
show_flash()
{"login": login_page, "signup": signup_page, "dashboard": dashboard_page, "form": form_page}[route]()
