import secrets

from flask import Request, session

OVERRIDABLE_METHODS = frozenset({"PUT", "PATCH", "DELETE"})


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from form or header."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(token, expected))


class MethodOverrideMiddleware:
    """
    Lets HTML forms issue PUT/PATCH/DELETE: `POST /listings/3?_method=DELETE`.

    Only the query string is inspected so the request body is left unread.
    """

    def __init__(self, wsgi_app):
        self.wsgi_app = wsgi_app

    def __call__(self, environ, start_response):
        if environ.get("REQUEST_METHOD", "").upper() == "POST":
            from urllib.parse import parse_qs

            qs = parse_qs(environ.get("QUERY_STRING", ""))
            method = (qs.get("_method") or [""])[0].upper()
            if method in OVERRIDABLE_METHODS:
                environ["REQUEST_METHOD"] = method
        return self.wsgi_app(environ, start_response)
