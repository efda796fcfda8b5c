"""
Minimal HTML pages for the login flow terminals. All dynamic values are escaped.
"""
import html
import json

from fastapi.responses import HTMLResponse


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
{body}
</body>
</html>""",
        status_code=status_code,
    )


def home_page(username: str | None) -> HTMLResponse:
    if username:
        body = f"""  <h1>Signed in</h1>
  <p>Signed in as <strong>{html.escape(username)}</strong>.</p>
  <p><a href="/logout">Log out</a></p>"""
    else:
        body = """  <h1>Welcome</h1>
  <p><a href="/login?action=start">Log in</a></p>"""
    return _page("Home", body)


def login_page(start_url: str) -> HTMLResponse:
    """Shown when auto-login is off or bypassed: the user starts the provider login explicitly."""
    return _page(
        "Log in",
        f"""  <h1>Log in</h1>
  <p><a href="{html.escape(start_url)}">Log in with your identity provider</a></p>""",
    )


def login_error_page(message: str, code: str | None, login_link: str) -> HTMLResponse:
    msg = message or "Please see the site administrator"
    return _page(
        "Login error",
        f"""  <h1>Login error</h1>
  <p>There was a problem with your log in: {html.escape(msg)} [error code: {html.escape(code or "unknown")}]</p>
  <p><a href="{html.escape(login_link)}">&larr; Login</a></p>""",
        status_code=401,
    )


def interim_page(redirect_to: str) -> HTMLResponse:
    """Popup/silent logins: confirm and let the opener continue."""
    # JSON inside <script>: "<" must not survive, or "</script>" in the target ends the block
    target = json.dumps(redirect_to).replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")
    return _page(
        "Logged in",
        f"""  <h1>You have logged in successfully</h1>
  <p><a href="{html.escape(redirect_to)}">Continue</a></p>
  <script>if (window.opener) {{ window.opener.location = {target}; window.close(); }}</script>""",
    )


def verification_page(email: str | None, subject: str, resend_token: str) -> HTMLResponse:
    return _page(
        "Verify your email",
        f"""  <h1>Please verify your email</h1>
  <p>A verification link was sent to <strong>{html.escape(email or "your email address")}</strong>.
  Follow it, then log in again.</p>
  <form method="post" action="/verification/resend">
    <input type="hidden" name="sub" value="{html.escape(subject)}">
    <input type="hidden" name="token" value="{html.escape(resend_token)}">
    <button type="submit">Resend verification email</button>
  </form>
  <p><a href="/login?action=start">Log in again</a></p>""",
        status_code=403,
    )


def logged_out_page() -> HTMLResponse:
    return _page(
        "Logged out",
        """  <h1>Logged out</h1>
  <p>You are logged out.</p>
  <p><a href="/">Home</a></p>""",
    )
