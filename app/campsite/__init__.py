import logging
from datetime import timedelta

from flask import Flask, g, request, session
from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError

from app.campsite.config import load_config
from app.campsite.db import check_connection, init_db, teardown_db_session
from app.campsite.routes import bp as routes_bp
from app.campsite.auth import bp as auth_bp, load_current_user
from app.campsite.modules.listings.admin import bp as listings_bp
from app.campsite.modules.reviews.admin import bp as reviews_bp

logger = logging.getLogger(__name__)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=app.config["SESSION_LIFETIME_DAYS"])
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.campsite.security import MethodOverrideMiddleware, ensure_csrf_token, validate_csrf

    app.wsgi_app = MethodOverrideMiddleware(app.wsgi_app)  # type: ignore[method-assign]

    @app.template_filter("money")
    def _money_filter(value) -> str:
        if value is None:
            return "—"
        return f"{value:,.2f}"

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/assets/", "/health", "/healthz")):
            return None
        if not app.config.get("CSRF_ENABLED", True):
            return None
        ensure_csrf_token()
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/register pages can be submitted from a fresh cookie.
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                from app.campsite.context import render_page

                return render_page("errors/400.html", status=400, message="CSRF token missing or invalid.")

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)
    try:
        check_connection(app)
    except SQLAlchemyError as e:
        app.logger.critical("Database unreachable at startup: %s", e)
        raise RuntimeError(f"Database unreachable: {e}") from e

    # Storage config check (fail loudly on misconfiguration, but keep serving)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(listings_bp)
    app.register_blueprint(reviews_bp)

    def _load_user_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    # Runs before the CSRF guard so error pages still know the user.
    app.before_request_funcs.setdefault(None, []).insert(0, _load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.after_request
    def _keep_session_permanent(response):
        if session.get("sid"):
            session.permanent = True
        return response

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        from app.campsite.context import render_page

        return render_page("errors/404.html", status=404)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        from app.campsite.context import render_page

        rid = getattr(g, "request_id", None)
        app.logger.error("Unhandled 500 (request_id=%s)", rid, exc_info=getattr(e, "original_exception", e))
        return render_page("errors/500.html", status=500, request_id=rid)

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        from flask import flash, redirect, url_for

        flash("File too large. Maximum size is 10MB.", "error")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("listings.listings_index")), 302

    logger.info("create_app() complete; app ready to serve")

    return app
