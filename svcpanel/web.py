from __future__ import annotations

import json
import logging
import os
import secrets
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware

from svcpanel.core import DEFAULT_CONFIG_PATH, Config, load_config
from svcpanel.service_manager import ServiceManager, get_service_spec
from svcpanel.uci import UciError


TEMPLATE_DIR = Path(__file__).parent / "web_templates"
STATIC_DIR = Path(__file__).parent / "web_static"
SECRET_PATH = Path(os.getenv("SVCPANEL_WEB_SECRET_PATH", "/etc/svcpanel-web.secret"))
AUTH_DISABLED = os.getenv("SVCPANEL_WEB_AUTH_DISABLED") == "1"
PAM_SERVICE = os.getenv("SVCPANEL_WEB_PAM_SERVICE") or "login"
ALLOW_NON_ROOT = os.getenv("SVCPANEL_ALLOW_NON_ROOT") == "1"

logger = logging.getLogger(__name__)


try:
    import pam

    def _authenticate(username: str, password: str) -> bool:
        pam_session = pam.pam()
        ok = pam_session.authenticate(username, password, service=PAM_SERVICE)
        if not ok:
            logger.warning("PAM auth failed (service=%s, code=%s, reason=%s)", PAM_SERVICE, pam_session.code, pam_session.reason)
        return ok


except Exception:

    def _authenticate(username: str, password: str) -> bool:  # type: ignore[override]
        return False


def _load_secret() -> str:
    if SECRET_PATH.exists():
        return SECRET_PATH.read_text(encoding="utf-8").strip()
    secret = secrets.token_urlsafe(32)
    try:
        SECRET_PATH.parent.mkdir(parents=True, exist_ok=True)
        SECRET_PATH.write_text(secret, encoding="utf-8")
    except OSError:
        logger.warning("Unable to persist session secret at %s", SECRET_PATH)
    return secret


def _config_path() -> Path:
    env_path = os.getenv("SVCPANEL_CONFIG_PATH")
    return Path(env_path) if env_path else DEFAULT_CONFIG_PATH


def _get_config() -> Config:
    return load_config(_config_path())


def _set_notice(request: Request, message: str, kind: str = "info", output: str | None = None) -> None:
    request.session["notice"] = message
    request.session["notice_kind"] = kind
    if output:
        request.session["notice_output"] = output
    else:
        request.session.pop("notice_output", None)


def _pop_notice(request: Request) -> Dict[str, Any]:
    return {
        "notice": request.session.pop("notice", None),
        "notice_kind": request.session.pop("notice_kind", None),
        "notice_output": request.session.pop("notice_output", None),
    }


def _redirect_to_service(key: str) -> RedirectResponse:
    return RedirectResponse(f"/services/{key}", status_code=303)


def _require_service(key: str) -> None:
    try:
        get_service_spec(key)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown service: {key}")


def create_app(manager: ServiceManager | None = None) -> FastAPI:
    app = FastAPI(title="svcpanel")

    def _manager() -> ServiceManager:
        if manager is not None:
            return manager
        return ServiceManager(_get_config())

    @app.middleware("http")
    async def _auth_middleware(request: Request, call_next):
        if not ALLOW_NON_ROOT and os.geteuid() != 0:
            return HTMLResponse(
                "svcpanel web must run as root. Start with sudo or set SVCPANEL_ALLOW_NON_ROOT=1 for dev.",
                status_code=503,
            )
        if AUTH_DISABLED:
            return await call_next(request)
        if request.url.path.startswith("/static"):
            return await call_next(request)
        if request.url.path in {"/login", "/logout"}:
            return await call_next(request)
        if not request.session.get("user"):
            if request.url.path.startswith("/api/"):
                return JSONResponse({"detail": "Not authenticated"}, status_code=401)
            return RedirectResponse("/login", status_code=303)
        return await call_next(request)

    app.add_middleware(SessionMiddleware, secret_key=_load_secret())
    app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")
    templates = Jinja2Templates(directory=TEMPLATE_DIR)

    @app.get("/login", response_class=HTMLResponse)
    def login_form(request: Request):
        return templates.TemplateResponse(
            "login.html",
            {"request": request, "error": None},
        )

    @app.post("/login")
    def login_submit(request: Request, username: str = Form(...), password: str = Form(...)):
        if _authenticate(username, password):
            request.session["user"] = username
            return RedirectResponse("/", status_code=303)
        return templates.TemplateResponse(
            "login.html",
            {"request": request, "error": "Invalid credentials."},
            status_code=401,
        )

    @app.get("/logout")
    def logout(request: Request):
        request.session.clear()
        return RedirectResponse("/login", status_code=303)

    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request):
        services = await _manager().list_services()
        return templates.TemplateResponse(
            "index.html",
            {"request": request, "services": services, **_pop_notice(request)},
        )

    async def _render_service(
        request: Request,
        key: str,
        submitted: Dict[str, str] | None = None,
        errors: Dict[str, str] | None = None,
        status_code: int = 200,
    ):
        svc_manager = _manager()
        page = await svc_manager.page(key, submitted, errors)
        return templates.TemplateResponse(
            "service.html",
            {
                "request": request,
                "page": page,
                "spec": page.spec,
                "view": page.view,
                "schema": page.schema,
                "sections": page.sections,
                "poll_context": json.dumps(page.poll_context),
                "poll_interval": svc_manager.config.web.poll_interval,
                **_pop_notice(request),
            },
            status_code=status_code,
        )

    @app.get("/services/{key}", response_class=HTMLResponse)
    async def service_page(request: Request, key: str):
        _require_service(key)
        return await _render_service(request, key)

    @app.post("/services/{key}/save")
    async def service_save(request: Request, key: str):
        _require_service(key)
        form = await request.form()
        submitted = {name: str(value) for name, value in form.items() if name != "apply_action"}
        apply_action = str(form.get("apply_action") or "") or None
        outcome = await _manager().save(key, submitted, action=apply_action)
        if outcome.result.errors:
            _set_notice(request, outcome.result.summary(), "error")
            return await _render_service(request, key, submitted, outcome.result.errors, status_code=400)
        messages = [outcome.result.summary()]
        if outcome.action is not None:
            messages.append(outcome.action.message)
        _set_notice(
            request,
            "\n".join(messages),
            "info" if outcome.ok else "error",
            output=outcome.action.output if outcome.action and outcome.action.show_output else None,
        )
        return _redirect_to_service(key)

    @app.post("/services/{key}/actions/{action}")
    async def service_action(request: Request, key: str, action: str):
        _require_service(key)
        outcome = await _manager().run_action(key, action)
        _set_notice(
            request,
            outcome.message,
            "info" if outcome.ok else "error",
            output=outcome.output if outcome.show_output else None,
        )
        return _redirect_to_service(key)

    @app.post("/api/services/{key}/actions/{action}")
    async def service_action_api(key: str, action: str):
        _require_service(key)
        outcome = await _manager().run_action(key, action)
        return JSONResponse(outcome.to_dict())

    @app.get("/api/services/{key}/poll")
    async def service_poll_api(request: Request, key: str):
        _require_service(key)
        patch = await _manager().poll(key, dict(request.query_params))
        return JSONResponse(patch)

    @app.post("/services/{key}/sections/{section_type}/add")
    async def section_add(request: Request, key: str, section_type: str):
        _require_service(key)
        try:
            name = await _manager().add_section(key, section_type)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Sections of type {section_type} cannot be added")
        except UciError as exc:
            _set_notice(request, f"Adding section failed: {exc}", "error")
            return _redirect_to_service(key)
        _set_notice(request, f"Added section {name}.")
        return _redirect_to_service(key)

    @app.post("/services/{key}/sections/{name}/delete")
    async def section_delete(request: Request, key: str, name: str):
        _require_service(key)
        try:
            await _manager().remove_section(key, name)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Section {name} cannot be removed")
        except UciError as exc:
            _set_notice(request, f"Removing section failed: {exc}", "error")
            return _redirect_to_service(key)
        _set_notice(request, f"Removed section {name}.")
        return _redirect_to_service(key)

    return app


app = create_app()
