from flask import Blueprint, abort, send_file

from app.campsite.context import render_page
from app.campsite.storage import LocalStorage, StorageError, asset_store

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return render_page("public/home.html")


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for probes. No DB access, minimal overhead.
    """
    return "ok", 200


@bp.get("/assets/<path:key>")
def asset(key: str):
    """Serves locally stored uploads; S3 assets are linked directly."""
    store = asset_store()
    if not isinstance(store, LocalStorage):
        abort(404)
    try:
        fh = store.open(key)
    except StorageError:
        abort(404)
    return send_file(fh, download_name=key.rsplit("/", 1)[-1])
