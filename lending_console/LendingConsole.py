import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from db.deps import get_audit_db
from schemas.lending import EQUIPMENT_STATUSES, LOAN_STATUSES, Equipment, ImageUpload, RegisterLoanRequest
from schemas.session import ConsoleUser
from services.access_service import build_navigation, can, can_access_route, rights_for
from services.audit_service import init_audit_schema, log_audit, recent_events
from services.lending_api import AuthApi, LendingApi, LendingApiError, SessionExpiredError
from services.loan_poller import get_poll_interval_seconds
from services.login_service import LoginError, perform_login
from services.report_service import (
    ALL_STATUSES,
    available_equipment,
    build_report,
    dashboard_stats,
    days_until_due,
    filter_by_status,
    search_equipment,
)
from services.session_store import SessionStore

BASE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = BASE_DIR / "templates"

SESSION_COOKIE_NAME = "lending_console_session"
FLASH_KEY = "flash"
MIN_USER_SEARCH_LENGTH = 2
AUTH_LOGGER = logging.getLogger("lending_console.auth")
CONSOLE_LOGGER = logging.getLogger("lending_console.views")


def _require_session_secret() -> str:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


@asynccontextmanager
async def _lifespan(app: FastAPI):
    init_audit_schema()
    yield


app = FastAPI(lifespan=_lifespan)
app.add_middleware(
    SessionMiddleware,
    secret_key=_require_session_secret(),
    session_cookie=SESSION_COOKIE_NAME,
    same_site="lax",
    https_only=_env_flag("SESSION_COOKIE_HTTPS_ONLY", "false"),
)

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


def _format_datetime(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%d %b %Y %H:%M")


templates.env.filters["datetime"] = _format_datetime


class LoginRequired(Exception):
    pass


def get_session_store(request: Request) -> SessionStore:
    return SessionStore(request.session)


def get_auth_api() -> AuthApi:
    return AuthApi()


def get_lending_api(store: SessionStore = Depends(get_session_store)) -> LendingApi:
    return LendingApi(store)


def require_console_user(store: SessionStore = Depends(get_session_store)) -> ConsoleUser:
    session = store.read()
    if session is None:
        raise LoginRequired()
    return session.user


def _require_capability(user: ConsoleUser, capability: str) -> None:
    if not can(user, capability):
        raise HTTPException(status_code=403, detail="Admin role required.")


def _require_route(request: Request, user: ConsoleUser) -> None:
    if not can_access_route(user, request.url.path):
        raise HTTPException(status_code=403, detail="Admin role required.")


def _flash(request: Request, message: str, level: str = "info") -> None:
    messages = list(request.session.get(FLASH_KEY) or [])
    messages.append({"message": message, "level": level})
    request.session[FLASH_KEY] = messages


def _pop_flashes(request: Request) -> list[dict]:
    return list(request.session.pop(FLASH_KEY, None) or [])


def _render(request: Request, template: str, user: ConsoleUser | None, context: dict | None = None, status_code: int = 200):
    payload = {
        "user": user,
        "nav": build_navigation(user, request.url.path),
        "rights": rights_for(user),
        "flashes": _pop_flashes(request),
    }
    payload.update(context or {})
    return templates.TemplateResponse(request, template, payload, status_code=status_code)


def _see_other(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=303)


def _read_upload(upload: UploadFile | None) -> ImageUpload | None:
    if upload is None or not upload.filename:
        return None
    content = upload.file.read()
    if not content:
        return None
    return ImageUpload(
        filename=upload.filename,
        content_type=upload.content_type or "application/octet-stream",
        content=content,
    )


@app.exception_handler(LoginRequired)
def _login_required_handler(request: Request, exc: LoginRequired):
    return _see_other("/login")


@app.exception_handler(SessionExpiredError)
def _session_expired_handler(request: Request, exc: SessionExpiredError):
    # The client already cleared token and user; the cookie is rewritten on this response.
    _flash(request, str(exc), "error")
    AUTH_LOGGER.info("Forced logout after 401 path=%s", request.url.path)
    return _see_other("/login")


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/")
def index():
    return _see_other("/dashboard")


@app.get("/login")
def login_page(request: Request, registered: bool = Query(False), store: SessionStore = Depends(get_session_store)):
    if store.read() is not None:
        return _see_other("/dashboard")
    context = {"email": "", "error": None}
    if registered:
        context["notice"] = "Registration successful. Please sign in with your credentials."
    return _render(request, "login.html", None, context)


@app.post("/login")
def login_submit(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    remember: bool = Form(False),
    store: SessionStore = Depends(get_session_store),
    auth_api: AuthApi = Depends(get_auth_api),
    db: Session = Depends(get_audit_db),
):
    submitted_email = email.strip()
    if not submitted_email or not password:
        return _render(request, "login.html", None, {"email": submitted_email, "error": "Email and password are required."}, 400)
    try:
        resolved = perform_login(auth_api, store, submitted_email, password, remember=remember)
    except (LoginError, LendingApiError) as exc:
        AUTH_LOGGER.warning("Login failed email=%s reason=%s", submitted_email, exc)
        log_audit(db, "LoginFailed", details=str(exc)[:1000], user_email=submitted_email)
        return _render(request, "login.html", None, {"email": submitted_email, "error": str(exc)}, 400)

    log_audit(
        db,
        "LoginSuccess",
        entity_id=resolved.user.id,
        details=f"source={resolved.source} role={resolved.user.role}",
        user_email=resolved.user.email,
    )
    return _see_other("/dashboard")


@app.get("/register")
def register_page(request: Request):
    return _render(request, "register.html", None, {"name": "", "email": "", "error": None})


@app.post("/register")
def register_submit(
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
    auth_api: AuthApi = Depends(get_auth_api),
):
    name = name.strip()
    email = email.strip()
    if not name or not email or not password:
        return _render(request, "register.html", None, {"name": name, "email": email, "error": "All fields are required."}, 400)
    try:
        auth_api.register(name, email, password)
    except LendingApiError as exc:
        return _render(request, "register.html", None, {"name": name, "email": email, "error": str(exc)}, 400)
    AUTH_LOGGER.info("Registered console user email=%s", email)
    return _see_other("/login?registered=1")


@app.post("/logout")
def logout(
    store: SessionStore = Depends(get_session_store),
    db: Session = Depends(get_audit_db),
):
    user = store.get_user()
    store.clear()
    if user is not None:
        log_audit(db, "Logout", entity_id=user.id, user_email=user.email)
    return _see_other("/login")


@app.get("/dashboard")
def dashboard(
    request: Request,
    user: ConsoleUser = Depends(require_console_user),
    api: LendingApi = Depends(get_lending_api),
):
    error = None
    stats = dashboard_stats([], [])
    try:
        stats = dashboard_stats(api.equipment.list_all(), api.loans.list_for(user))
    except LendingApiError as exc:
        CONSOLE_LOGGER.warning("Dashboard stats unavailable: %s", exc)
        error = str(exc)
    return _render(request, "dashboard.html", user, {"stats": stats, "error": error})


@app.get("/inventory")
def inventory(
    request: Request,
    status: str = Query(ALL_STATUSES),
    user: ConsoleUser = Depends(require_console_user),
    api: LendingApi = Depends(get_lending_api),
):
    error = None
    items: list[Equipment] = []
    try:
        items = api.equipment.list_all()
    except LendingApiError as exc:
        error = str(exc)
    return _render(
        request,
        "inventory.html",
        user,
        {
            "items": filter_by_status(items, status),
            "status": status,
            "statuses": (ALL_STATUSES,) + EQUIPMENT_STATUSES,
            "error": error,
        },
    )


@app.post("/inventory")
def create_equipment(
    request: Request,
    name: str = Form(""),
    category: str = Form(""),
    description: str = Form(""),
    image: UploadFile | None = File(None),
    user: ConsoleUser = Depends(require_console_user),
    api: LendingApi = Depends(get_lending_api),
    db: Session = Depends(get_audit_db),
):
    _require_capability(user, "manageEquipment")
    if not name.strip() or not category.strip():
        _flash(request, "Name and category are required.", "error")
        return _see_other("/inventory")
    try:
        created = api.equipment.create(name.strip(), category.strip(), description.strip(), _read_upload(image))
    except LendingApiError as exc:
        _flash(request, str(exc), "error")
        return _see_other("/inventory")
    log_audit(
        db,
        "EquipmentCreated",
        entity_type="Equipment",
        entity_id=created.id if created else None,
        details=f"name={name.strip()}",
        user_email=user.email,
    )
    _flash(request, "Equipment created.", "success")
    return _see_other("/inventory")


def _find_equipment(api: LendingApi, equipment_id: int) -> Equipment:
    for item in api.equipment.list_all():
        if item.id == equipment_id:
            return item
    raise HTTPException(status_code=404, detail="Equipment not found.")


@app.get("/inventory/{equipment_id}/edit")
def edit_equipment_page(
    request: Request,
    equipment_id: int,
    user: ConsoleUser = Depends(require_console_user),
    api: LendingApi = Depends(get_lending_api),
):
    _require_capability(user, "manageEquipment")
    try:
        item = _find_equipment(api, equipment_id)
    except LendingApiError as exc:
        _flash(request, str(exc), "error")
        return _see_other("/inventory")
    return _render(request, "equipment_form.html", user, {"item": item, "statuses": EQUIPMENT_STATUSES})


@app.post("/inventory/{equipment_id}")
def update_equipment(
    request: Request,
    equipment_id: int,
    name: str = Form(""),
    category: str = Form(""),
    description: str = Form(""),
    status: str = Form(""),
    image: UploadFile | None = File(None),
    user: ConsoleUser = Depends(require_console_user),
    api: LendingApi = Depends(get_lending_api),
    db: Session = Depends(get_audit_db),
):
    _require_capability(user, "manageEquipment")
    edit_url = f"/inventory/{equipment_id}/edit"
    if not name.strip() or not category.strip():
        _flash(request, "Name and category are required.", "error")
        return _see_other(edit_url)
    if status not in EQUIPMENT_STATUSES:
        _flash(request, f"Unknown status: {status or '(empty)'}", "error")
        return _see_other(edit_url)
    try:
        api.equipment.update(equipment_id, name.strip(), category.strip(), description.strip(), status, _read_upload(image))
    except LendingApiError as exc:
        _flash(request, str(exc), "error")
        return _see_other(edit_url)
    log_audit(
        db,
        "EquipmentUpdated",
        entity_type="Equipment",
        entity_id=equipment_id,
        details=f"status={status}",
        user_email=user.email,
    )
    _flash(request, "Equipment updated.", "success")
    return _see_other("/inventory")


@app.post("/inventory/{equipment_id}/delete")
def delete_equipment(
    request: Request,
    equipment_id: int,
    user: ConsoleUser = Depends(require_console_user),
    api: LendingApi = Depends(get_lending_api),
    db: Session = Depends(get_audit_db),
):
    _require_capability(user, "manageEquipment")
    try:
        api.equipment.delete(equipment_id)
    except LendingApiError as exc:
        _flash(request, str(exc), "error")
        return _see_other("/inventory")
    log_audit(db, "EquipmentDeleted", entity_type="Equipment", entity_id=equipment_id, user_email=user.email)
    _flash(request, "Equipment deleted.", "success")
    return _see_other("/inventory")


@app.get("/loans")
def loans(
    request: Request,
    status: str = Query(ALL_STATUSES),
    user: ConsoleUser = Depends(require_console_user),
    api: LendingApi = Depends(get_lending_api),
):
    error = None
    rows: list[dict] = []
    try:
        loan_list = api.loans.list_for(user)
    except LendingApiError as exc:
        error = str(exc)
        loan_list = []
    for loan in filter_by_status(loan_list, status):
        rows.append({"loan": loan, "due": days_until_due(loan)})
    return _render(
        request,
        "loans.html",
        user,
        {
            "rows": rows,
            "status": status,
            "statuses": (ALL_STATUSES,) + LOAN_STATUSES,
            "error": error,
            "poll_seconds": int(get_poll_interval_seconds()),
        },
    )


@app.get("/loans/new")
def new_loan_page(
    request: Request,
    user_q: str = Query(""),
    equipment_q: str = Query(""),
    user: ConsoleUser = Depends(require_console_user),
    api: LendingApi = Depends(get_lending_api),
):
    _require_capability(user, "registerLoans")
    error = None
    candidates: list[Equipment] = []
    try:
        available = available_equipment(api.equipment.list_all())
        candidates = search_equipment(available, equipment_q) if equipment_q.strip() else available
    except LendingApiError as exc:
        error = str(exc)
    users = api.users.search(user_q) if len(user_q.strip()) >= MIN_USER_SEARCH_LENGTH else []
    return _render(
        request,
        "loan_form.html",
        user,
        {
            "user_q": user_q,
            "equipment_q": equipment_q,
            "users": users,
            "equipment": candidates,
            "min_return": datetime.now().strftime("%Y-%m-%dT%H:%M"),
            "error": error,
        },
    )


@app.post("/loans")
def register_loan(
    request: Request,
    user_id: int = Form(0),
    equipment_id: int = Form(0),
    scheduled_return: str = Form(""),
    user: ConsoleUser = Depends(require_console_user),
    api: LendingApi = Depends(get_lending_api),
    db: Session = Depends(get_audit_db),
):
    _require_capability(user, "registerLoans")
    form_url = "/loans/new"
    if user_id <= 0:
        _flash(request, "Please select a user from the list.", "error")
        return _see_other(form_url)
    if equipment_id <= 0:
        _flash(request, "Please select equipment from the list.", "error")
        return _see_other(form_url)
    try:
        due = datetime.fromisoformat(scheduled_return.strip())
    except ValueError:
        _flash(request, "Please provide a valid return date.", "error")
        return _see_other(form_url)
    now = datetime.now()
    if due <= now:
        _flash(request, "The return date must be in the future.", "error")
        return _see_other(form_url)

    try:
        available_ids = {item.id for item in available_equipment(api.equipment.list_all())}
        if equipment_id not in available_ids:
            _flash(request, "The selected equipment is no longer available.", "error")
            return _see_other(form_url)
        api.loans.register(
            RegisterLoanRequest(
                userId=user_id,
                equipmentId=equipment_id,
                scheduledReturnDate=due,
                loanDate=now,
            )
        )
    except LendingApiError as exc:
        _flash(request, str(exc), "error")
        return _see_other(form_url)
    log_audit(
        db,
        "LoanRegistered",
        entity_type="Loan",
        details=f"userId={user_id} equipmentId={equipment_id} due={due.isoformat()}",
        user_email=user.email,
    )
    _flash(request, "Loan registered.", "success")
    return _see_other("/loans")


@app.post("/loans/{loan_id}/return")
def record_return(
    request: Request,
    loan_id: int,
    user: ConsoleUser = Depends(require_console_user),
    api: LendingApi = Depends(get_lending_api),
    db: Session = Depends(get_audit_db),
):
    _require_capability(user, "recordReturns")
    try:
        api.loans.record_return(loan_id)
    except LendingApiError as exc:
        _flash(request, str(exc), "error")
        return _see_other("/loans")
    log_audit(db, "LoanReturned", entity_type="Loan", entity_id=loan_id, user_email=user.email)
    _flash(request, "Return recorded.", "success")
    return _see_other("/loans")


@app.get("/reports")
def reports(
    request: Request,
    user: ConsoleUser = Depends(require_console_user),
    api: LendingApi = Depends(get_lending_api),
):
    _require_route(request, user)
    error = None
    report = build_report([], [])
    try:
        report = build_report(api.equipment.list_all(), api.loans.list_for(user))
    except LendingApiError as exc:
        error = str(exc)
    return _render(request, "reports.html", user, {"report": report, "error": error})


@app.get("/configuration")
def configuration(
    request: Request,
    user: ConsoleUser = Depends(require_console_user),
    db: Session = Depends(get_audit_db),
):
    _require_route(request, user)
    return _render(request, "configuration.html", user, {"events": recent_events(db)})
