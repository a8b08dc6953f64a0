import logging
import os
from datetime import timedelta

from flask import Flask, g, redirect, render_template, request, session, url_for
from dotenv import load_dotenv

from app.laft.config import load_config
from app.laft.db import init_db, teardown_db_session
from app.laft.routes import bp as routes_bp
from app.laft.auth import bp as auth_bp, load_current_user
from app.laft.admin import bp as admin_bp
from app.laft.profile import bp as profile_bp, needs_completion
from app.laft.modules.items.admin import bp as items_bp
from app.laft.modules.claims.admin import bp as claims_bp
from app.laft.modules.messaging.admin import bp as messaging_bp
from app.laft.modules.notifications.admin import bp as notifications_bp

logger = logging.getLogger(__name__)

_PUBLIC_PREFIXES = ("/static/", "/health", "/healthz")
# Endpoints reachable before the profile has a name.
_COMPLETION_EXEMPT = ("profile.complete_get", "profile.complete_post", "static")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    # CSRF protection (minimal)
    from app.laft.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.laft.rbac import user_has_permission

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"has_perm": has_perm, "current_user": getattr(g, "current_user", None)}

    @app.context_processor
    def _inject_unread_notifications() -> dict:
        user = getattr(g, "current_user", None)
        if not user:
            return {"unread_notifications": 0}
        from app.laft.db import db_session
        from app.laft.modules.notifications.service import unread_count

        return {"unread_notifications": unread_count(db_session(), user)}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "—"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_PUBLIC_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Allow safe auth endpoints to pass through (login/register)
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                logger.warning("CSRF validation failed path=%s request_id=%s", request.path, getattr(g, "request_id", None))
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

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

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(profile_bp, url_prefix="/profile")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(items_bp)
    app.register_blueprint(claims_bp)
    app.register_blueprint(messaging_bp)
    app.register_blueprint(notifications_bp)

    def _load_user_wrapper():
        if request.path.startswith(_PUBLIC_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.before_request
    def _profile_completion_guard():
        user = getattr(g, "current_user", None)
        if not needs_completion(user):
            return None
        endpoint = request.endpoint or ""
        if endpoint in _COMPLETION_EXEMPT or endpoint.startswith(("auth.", "routes.")):
            return None
        return redirect(url_for("profile.complete_get"))

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return render_template("errors/500.html", request_id=rid), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        from flask import flash

        flash("File too large. Each file may be at most 5MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("items.index")), 302

    logger.info("create_app() complete; app ready to serve")

    return app
