"""
SSO login web app: login page with optional auto-login, provider callback (code and implicit flows),
logout, email-verification resend and identity unlinking.
Port 8000 by default.
"""
import logging
from contextlib import asynccontextmanager
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session
from starlette.responses import Response

from sso_login import provider_api, sessions, views
from sso_login.audit import (
    EVENT_IDENTITY_DELETED,
    EVENT_LOGOUT,
    get_client_ip,
    log_audit,
)
from sso_login.config import Settings, get_settings
from sso_login.csrf import CsrfTokenStore
from sso_login.database import get_db, init_db
from sso_login.hooks import LoginHooks
from sso_login.login_flow import (
    AlreadyLoggedIn,
    IncomingCallback,
    LoginAborted,
    LoginFlowController,
    LoginRedirect,
    LoginRequest,
    LoginStart,
    LoginSucceeded,
    VerificationRequired,
)
from sso_login.users import UsersRepo

logger = logging.getLogger(__name__)

RESEND_COOKIE = "sso_login_resend"
KIND_RESEND = "resend"

# Site-wide hook registry; integrations append callables at startup
login_hooks = LoginHooks()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup."""
    init_db()
    settings = get_settings()
    if not settings.ready:
        logger.warning("Provider domain or client id not configured; provider logins are disabled")
    yield


app = FastAPI(title="SSO Login", version="1.0.0", lifespan=lifespan)


def get_hooks() -> LoginHooks:
    return login_hooks


def get_controller(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    hooks: LoginHooks = Depends(get_hooks),
) -> LoginFlowController:
    return LoginFlowController(db, settings, hooks)


def _resend_store(db: Session, settings: Settings) -> CsrfTokenStore:
    return CsrfTokenStore(
        db, KIND_RESEND, RESEND_COOKIE, settings.state_ttl_seconds, secure=settings.cookie_secure
    )


def _clear_flow_cookies(response: Response, controller: LoginFlowController) -> None:
    controller.state_store.clear_cookie(response)
    controller.nonce_store.clear_cookie(response)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "sso_login"}


@app.get("/", response_class=HTMLResponse)
def home(request: Request, db: Session = Depends(get_db)):
    user = sessions.current_user(request, db)
    return views.home_page(user.username if user else None)


@app.get("/login")
def login(
    request: Request,
    action: str | None = None,
    redirect_to: str | None = None,
    connection: str | None = None,
    interim_login: str | None = None,
    wle: str | None = None,
    db: Session = Depends(get_db),
    controller: LoginFlowController = Depends(get_controller),
):
    """
    Login page. With auto-login on (or ?action=start) the browser goes straight to the provider;
    ?wle bypasses auto-login so the local page can be reached.
    """
    user = sessions.current_user(request, db)
    result = controller.start_login(
        LoginRequest(
            action=action,
            redirect_to=redirect_to,
            connection=connection,
            interim=bool(interim_login),
            override=wle is not None,
            logged_in=user is not None,
        )
    )
    if isinstance(result, LoginRedirect):
        return RedirectResponse(url=result.url, status_code=302)
    if isinstance(result, LoginStart):
        response = RedirectResponse(url=result.url, status_code=302)
        controller.state_store.bind_to_cookie(response, result.state_token)
        if result.nonce_token:
            controller.nonce_store.bind_to_cookie(response, result.nonce_token)
        return response

    start_url = "/login?action=start"
    if redirect_to:
        start_url = f"{start_url}&{urlencode({'redirect_to': redirect_to})}"
    return views.login_page(start_url)


def _callback_response(
    request: Request,
    db: Session,
    controller: LoginFlowController,
    form: dict,
) -> Response:
    callback = IncomingCallback(
        flow=request.query_params.get("auth0"),
        query=dict(request.query_params),
        form={k: v for k, v in form.items() if v is not None},
        cookies=dict(request.cookies),
        logged_in=sessions.current_user(request, db) is not None,
        ip=get_client_ip(request),
    )
    if not controller.is_callback(callback):
        return RedirectResponse(url=controller.settings.home_url, status_code=302)

    outcome = controller.handle_callback(callback)
    secure = controller.settings.cookie_secure

    if isinstance(outcome, LoginSucceeded):
        if outcome.interim:
            response = views.interim_page(outcome.redirect_to)
        else:
            response = RedirectResponse(url=outcome.redirect_to, status_code=302)
        sessions.set_session_cookie(response, outcome.session_token, outcome.remember, secure)
    elif isinstance(outcome, AlreadyLoggedIn):
        response = RedirectResponse(url=outcome.redirect_to, status_code=302)
    elif isinstance(outcome, VerificationRequired):
        store = _resend_store(db, controller.settings)
        subject = outcome.userinfo.get("sub") or ""
        resend_token = store.issue(subject)
        response = views.verification_page(outcome.userinfo.get("email"), subject, resend_token)
        store.bind_to_cookie(response, resend_token)
    elif isinstance(outcome, LoginAborted):
        response = views.login_error_page(outcome.message, outcome.code, controller.login_link())
        sessions.clear_session_cookie(response, secure)
    else:
        raise HTTPException(status_code=500, detail="Unhandled login outcome")

    _clear_flow_cookies(response, controller)
    return response


@app.get("/callback")
def callback_get(
    request: Request,
    db: Session = Depends(get_db),
    controller: LoginFlowController = Depends(get_controller),
):
    """Authorization code flow (response_mode=query)."""
    return _callback_response(request, db, controller, {})


@app.post("/callback")
def callback_post(
    request: Request,
    state: str | None = Form(None),
    id_token: str | None = Form(None),
    token: str | None = Form(None),
    error: str | None = Form(None),
    error_description: str | None = Form(None),
    db: Session = Depends(get_db),
    controller: LoginFlowController = Depends(get_controller),
):
    """Implicit flow (response_mode=form_post)."""
    form = {
        "state": state,
        "id_token": id_token,
        "token": token,
        "error": error,
        "error_description": error_description,
    }
    return _callback_response(request, db, controller, form)


@app.get("/logout")
def logout(
    request: Request,
    db: Session = Depends(get_db),
    controller: LoginFlowController = Depends(get_controller),
):
    """End the local session, then optionally the provider session."""
    user = sessions.current_user(request, db)
    sessions.destroy_session(db, request.cookies.get(sessions.SESSION_COOKIE))
    if user is not None:
        log_audit(db, EVENT_LOGOUT, user_id=user.id, ip=get_client_ip(request))

    target = controller.logout_redirect(f"{controller.settings.base_url}/logged-out")
    response = RedirectResponse(url=target or "/logged-out", status_code=302)
    sessions.clear_session_cookie(response, controller.settings.cookie_secure)
    return response


@app.get("/logged-out", response_class=HTMLResponse)
def logged_out():
    return views.logged_out_page()


@app.post("/verification/resend", response_class=HTMLResponse)
def resend_verification(
    request: Request,
    sub: str = Form(...),
    token: str = Form(...),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Resend the provider's verification email; the token is single-use, cookie-bound and tied to sub."""
    store = _resend_store(db, settings)
    if not store.validate(token, request.cookies.get(RESEND_COOKIE), subject=sub):
        raise HTTPException(status_code=400, detail="Invalid or expired request")
    if not provider_api.send_verification_email(settings, sub):
        raise HTTPException(status_code=502, detail="Could not send verification email")
    response = HTMLResponse(
        """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Verification sent</title></head>
<body>
  <p>Verification email sent. Follow the link in it, then log in again.</p>
  <p><a href="/login?action=start">Log in</a></p>
</body>
</html>"""
    )
    store.clear_cookie(response)
    return response


@app.post("/identity/delete")
def delete_identity(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    hooks: LoginHooks = Depends(get_hooks),
):
    """Unlink the signed-in user's provider identity. The local account stays."""
    user = sessions.current_user(request, db)
    if user is None:
        raise HTTPException(status_code=401, detail="Not logged in")
    deleted = UsersRepo(db, settings, hooks).delete_mapping(user.id)
    if not deleted:
        raise HTTPException(status_code=404, detail="No linked identity")
    log_audit(db, EVENT_IDENTITY_DELETED, user_id=user.id, ip=get_client_ip(request))
    return {"deleted": True, "user_id": user.id}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "sso_login.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
