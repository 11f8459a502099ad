from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Dict, Optional, Tuple, Union
from urllib.parse import parse_qs, urlencode
import logging
import os
import pathlib

from robyn import Request, Response, Robyn
from robyn.templating import JinjaTemplate

import handlers
from auth import (
    SESSION_COOKIE_NAME,
    CookieSigner,
    cookie_clear_settings,
    cookie_settings,
    generate_session_token,
    hash_session_token,
)
from config import load_settings
from database import Database, SessionRecord
from errors import ErrorKind, PixBoardError
from handlers import Page, Redirect, SessionUser


settings = load_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = Robyn(__file__)

current_file_path = pathlib.Path(__file__).parent.resolve()

jinja_template = JinjaTemplate(os.path.join(current_file_path, "frontend/pages"))

# Singletons used by every request
db = Database(settings.db_path)
signer = CookieSigner(settings.secret_key, max_age=settings.session_ttl)

settings.upload_dir.mkdir(parents=True, exist_ok=True)
app.serve_directory(
    route="/uploads",
    directory_path=str(settings.upload_dir),
    show_files_listing=False,
)


async def _ensure_database() -> None:
    """Prepare the sqlite file before handling the first request."""
    await db.initialize()
    logger.info(
        "storage ready db_path=%s upload_dir=%s", settings.db_path, settings.upload_dir
    )


app.startup_handler(_ensure_database)


@dataclass
class AuthContext:
    user: Optional[SessionUser]
    session: Optional[SessionRecord]
    clear_cookie: bool


def _get_cookie_value(request: Request, name: str) -> Optional[str]:
    """Extract a single cookie value from the request headers."""
    cookie_header = request.headers.get("cookie")
    if not cookie_header:
        return None
    for chunk in cookie_header.split(";"):
        key, sep, value = chunk.strip().partition("=")
        if not sep:
            continue
        if key.strip() == name:
            return value
    return None


def _as_bytes(raw: Any) -> bytes:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if isinstance(raw, list):
        return bytes(raw)
    if isinstance(raw, str):
        return raw.encode("utf-8")
    return b""


def _form_data(request: Request) -> Dict[str, str]:
    """Return form fields, including urlencoded fallback parsing."""
    native = request.form_data or {}
    if native:
        return {str(k): str(v) for k, v in native.items()}
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/x-www-form-urlencoded" not in content_type:
        return {}
    body_bytes = _as_bytes(request.body)
    if not body_bytes:
        return {}
    parsed = parse_qs(
        body_bytes.decode("utf-8", errors="replace"), keep_blank_values=True
    )
    return {key: values[0] if values else "" for key, values in parsed.items()}


def _uploaded_file(request: Request) -> Tuple[Optional[str], Optional[bytes]]:
    """Return the first uploaded (filename, bytes) pair from a multipart body."""
    files = request.files or {}
    for filename, content in files.items():
        data = _as_bytes(content)
        if filename and data:
            return str(filename), data
    return None, None


def _query_value(request: Request, name: str) -> Optional[str]:
    value = request.query_params.get(name, None)
    return str(value) if value is not None else None


def _path_param(request: Request, name: str) -> Optional[str]:
    value = request.path_params.get(name)
    return str(value) if value is not None else None


def _now_iso() -> str:
    return datetime.utcnow().isoformat()


def _is_expired(expires_at: str) -> bool:
    try:
        return datetime.fromisoformat(expires_at) <= datetime.utcnow()
    except ValueError:
        return True


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        signer.sign(token),
        **cookie_settings(
            secure=settings.secure_cookies, max_age=settings.session_ttl
        ),
    )


def _clear_session_cookie(response: Response) -> None:
    response.set_cookie(SESSION_COOKIE_NAME, "", **cookie_clear_settings())


def _session_token(request: Request) -> Optional[str]:
    return signer.unsign(_get_cookie_value(request, SESSION_COOKIE_NAME))


async def _get_auth_context(request: Request) -> AuthContext:
    """Resolve the current user and session from the cookie, if present."""
    raw_cookie = _get_cookie_value(request, SESSION_COOKIE_NAME)
    if not raw_cookie:
        return AuthContext(user=None, session=None, clear_cookie=False)
    token = signer.unsign(raw_cookie)
    if not token:
        return AuthContext(user=None, session=None, clear_cookie=True)
    session = await db.fetch_session_by_token_hash(hash_session_token(token))
    if not session:
        return AuthContext(user=None, session=None, clear_cookie=True)
    if session.revoked_at or _is_expired(session.expires_at):
        if not session.revoked_at:
            await db.revoke_session(session.id, _now_iso())
        return AuthContext(user=None, session=None, clear_cookie=True)
    user = await db.fetch_user_by_id(session.user_id)
    if not user:
        return AuthContext(user=None, session=None, clear_cookie=True)
    await db.touch_session(session.id, _now_iso())
    return AuthContext(
        user=SessionUser.from_record(user), session=session, clear_cookie=False
    )


async def _open_session(request: Request, response: Response, user: SessionUser) -> None:
    """Replace any existing session with a fresh one for this user."""
    existing = _session_token(request)
    if existing:
        await db.revoke_session_by_hash(hash_session_token(existing), _now_iso())
    session_token = generate_session_token()
    expires_at = (
        datetime.utcnow() + timedelta(seconds=settings.session_ttl)
    ).isoformat()
    await db.create_session(
        user_id=user.id,
        token_hash=session_token.token_hash,
        expires_at=expires_at,
    )
    # Store the session in a httponly cookie so browsers send it automatically.
    _set_session_cookie(response, session_token.token)


def _redirect(location: str) -> Response:
    """Send a 303 redirect to the user agent."""
    return Response(
        status_code=303,
        headers={"location": location},
        description="",
    )


async def _ensure_authenticated(request: Request) -> Union[Response, AuthContext]:
    """Return the authenticated context or issue a login redirect if missing."""
    context = await _get_auth_context(request)
    if context.user:
        return context
    target = handlers.resume_path(request.url.path)
    response = _redirect(f"/login?{urlencode({'redirect': target})}")
    if context.clear_cookie:
        _clear_session_cookie(response)
    return response


def _render(
    request: Request,
    context: AuthContext,
    template: str,
    *,
    status: int = 200,
    **values: Any,
) -> Response:
    """Render a template for the current visitor, keeping the requested status."""
    template_response = jinja_template.render_template(
        template,
        request=request,
        user=context.user,
        **values,
    )
    response = Response(
        description=template_response.description,
        status_code=status,
        headers=template_response.headers,
    )
    if context.clear_cookie:
        _clear_session_cookie(response)
    return response


def _error_response(
    request: Request,
    context: AuthContext,
    exc: PixBoardError,
    *,
    template: Optional[str] = None,
    form_values: Optional[Dict[str, Any]] = None,
) -> Response:
    """Map a typed failure onto its status and either a form page or the error page."""
    if template:
        return _render(
            request,
            context,
            template,
            status=exc.status,
            error=exc.message,
            **(form_values or {}),
        )
    return _render(
        request,
        context,
        "error.html",
        status=exc.status,
        title=exc.kind.title,
        message=exc.message,
    )


async def _dispatch(
    request: Request,
    context: AuthContext,
    action: Awaitable[Union[Page, Redirect]],
    *,
    template: Optional[str] = None,
    form_values: Optional[Dict[str, Any]] = None,
) -> Response:
    """Run a handler and turn its outcome (or failure) into a Robyn response."""
    try:
        outcome = await action
    except PixBoardError as exc:
        return _error_response(
            request, context, exc, template=template, form_values=form_values
        )
    except Exception:
        logger.exception("request failed path=%s", request.url.path)
        return _error_response(
            request,
            context,
            PixBoardError(ErrorKind.INTERNAL, "Something went wrong"),
        )
    if isinstance(outcome, Redirect):
        response = _redirect(outcome.location)
        if outcome.login_user:
            await _open_session(request, response, outcome.login_user)
        elif context.clear_cookie:
            _clear_session_cookie(response)
        return response
    return _render(
        request, context, outcome.template, status=outcome.status, **outcome.context
    )


@app.get("/")
async def home(request: Request) -> Response:
    """Landing page with the newest uploads."""
    context = await _get_auth_context(request)
    return await _dispatch(request, context, handlers.home(db))


@app.get("/login")
async def login_get(request: Request) -> Response:
    context = await _get_auth_context(request)
    redirect_to = handlers.normalize_redirect_path(_query_value(request, "redirect"))
    return _render(request, context, "login.html", title="Login", redirect=redirect_to)


@app.post("/login")
async def login_post(request: Request) -> Response:
    """Validate credentials and issue a session when authentication succeeds."""
    context = await _get_auth_context(request)
    form = _form_data(request)
    redirect_to = _query_value(request, "redirect") or form.get("redirect")
    return await _dispatch(
        request,
        context,
        handlers.login(db, form, redirect_to),
        template="login.html",
        form_values={
            "title": "Login",
            "redirect": handlers.normalize_redirect_path(redirect_to),
            "email": form.get("email", ""),
        },
    )


@app.get("/logout")
async def logout(request: Request) -> Response:
    """Revoke the session and return to the landing page."""
    token = _session_token(request)
    if token:
        await db.revoke_session_by_hash(hash_session_token(token), _now_iso())
    response = _redirect("/")
    _clear_session_cookie(response)
    return response


@app.get("/register")
async def register_get(request: Request) -> Response:
    context = await _get_auth_context(request)
    return _render(request, context, "register.html", title="Register")


@app.post("/register")
async def register_post(request: Request) -> Response:
    context = await _get_auth_context(request)
    form = _form_data(request)
    return await _dispatch(
        request,
        context,
        handlers.register(db, form),
        template="register.html",
        form_values={
            "title": "Register",
            "username": form.get("username", ""),
            "email": form.get("email", ""),
        },
    )


@app.get("/upload")
async def upload_get(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    return _render(request, auth, "upload.html", title="Upload Image")


@app.post("/upload")
async def upload_post(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    form = _form_data(request)
    filename, data = _uploaded_file(request)
    return await _dispatch(
        request,
        auth,
        handlers.upload_image(
            db, settings, auth.user, filename=filename, data=data, form=form
        ),
        template="upload.html",
        form_values={"title": "Upload Image"},
    )


@app.get("/my-images")
async def my_images(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    return await _dispatch(request, auth, handlers.my_images(db, auth.user))


@app.get("/images")
async def image_list(request: Request) -> Response:
    context = await _get_auth_context(request)
    return await _dispatch(
        request,
        context,
        handlers.list_images(
            db,
            search=_query_value(request, "search"),
            page=_query_value(request, "page"),
        ),
        template="imagelist.html",
        form_values={"title": "Image Gallery", "images": []},
    )


@app.get("/images/:id")
async def image_detail(request: Request) -> Response:
    context = await _get_auth_context(request)
    return await _dispatch(
        request, context, handlers.image_detail(db, _path_param(request, "id"))
    )


@app.get("/images/:id/edit")
async def edit_get(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    return await _dispatch(
        request, auth, handlers.edit_form(db, _path_param(request, "id"), auth.user)
    )


@app.post("/images/:id/edit")
async def edit_post(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    return await _dispatch(
        request,
        auth,
        handlers.edit_image(
            db, _path_param(request, "id"), auth.user, _form_data(request)
        ),
    )


@app.post("/images/:id/delete")
async def delete_post(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    return await _dispatch(
        request,
        auth,
        handlers.delete_image(db, settings, _path_param(request, "id"), auth.user),
    )


if __name__ == "__main__":
    app.start(_check_port=False)
