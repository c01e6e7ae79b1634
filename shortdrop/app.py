import atexit
import os
import time
import uuid
from contextlib import contextmanager
from functools import wraps
from secrets import compare_digest
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, g, jsonify, redirect, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from markupsafe import escape
from werkzeug.datastructures import FileStorage

from .config import BYTES_PER_MB, load_config, turnstile_enabled
from .errors import (
    BadRequestError,
    NoFilePartError,
    NotFoundError,
    ShareServiceError,
    UnauthenticatedError,
)
from .logs import configure_logging, get_logger, sanitize_log_value
from .service import ShareService
from .turnstile import verify_token

AUTH_HEADER = "X-Auth"
TURNSTILE_FIELD = "cf-turnstile-response"
UPLOAD_BODY_SLACK_BYTES = BYTES_PER_MB

NOT_FOUND_PAGE = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>Link not found</title>
</head>
<body>
<h1>Link not found</h1>
<p>The short link <code>{slug}</code> does not exist or has expired.</p>
</body>
</html>
"""

config = load_config()
LOG_FILE = configure_logging(config["log_level"], config["logs_dir"])
lifecycle_logger = get_logger("shortdrop.lifecycle")

service = ShareService.from_config(config)

app = Flask(__name__)

# Multipart framing adds overhead on top of the file itself.
app.config["MAX_CONTENT_LENGTH"] = config["max_size_bytes"] + UPLOAD_BODY_SLACK_BYTES

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    storage_uri=config["rate_limit_storage"],
)


def upload_rate_limit_string() -> str:
    return f"{config['upload_rate_limit_per_hour']} per hour"


def download_rate_limit_string() -> str:
    return f"{config['download_rate_limit_per_minute']} per minute"


def api_rate_limit_string() -> str:
    return f"{config['api_rate_limit_per_minute']} per minute"


def check_upload_password() -> Tuple[bool, Optional[str]]:
    """Compare the ``X-Auth`` header with the configured upload password."""

    expected = config.get("upload_password")
    if not expected:
        return False, "Server password is not configured"
    provided = request.headers.get(AUTH_HEADER)
    if not provided:
        return False, f"Missing {AUTH_HEADER} header"
    if not compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        return False, "Password mismatch"
    return True, None


def require_upload_password(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        authenticated, reason = check_upload_password()
        g.authenticated = authenticated
        if not authenticated:
            lifecycle_logger.warning(
                "api_auth_failed endpoint=%s method=%s reason=%s",
                request.endpoint,
                request.method,
                reason,
            )
            raise UnauthenticatedError(reason=reason)
        return view(*args, **kwargs)

    return wrapped


def verify_bot_token() -> None:
    if not turnstile_enabled(config):
        return
    token = request.form.get(TURNSTILE_FIELD)
    if not verify_token(token, config["turnstile_secret"], request.remote_addr):
        lifecycle_logger.warning("upload_bot_check_failed remote=%s", request.remote_addr)
        raise UnauthenticatedError(reason="Bot verification failed")


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise BadRequestError("Invalid request body")
    return payload


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        try:
            file_storage.close()
        except OSError as error:
            lifecycle_logger.warning(
                "stream_close_failed filename=%s error=%s",
                sanitize_log_value(file_storage.filename or ""),
                error,
            )


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@app.after_request
def add_request_id_header(response: Response):
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(ShareServiceError)
def handle_share_service_error(error: ShareServiceError):
    if error.status_code >= 500:
        lifecycle_logger.error(
            "request_failed path=%s kind=%s error=%s details=%s",
            sanitize_log_value(request.path),
            error.kind,
            error.message,
            sanitize_log_value(error.details or ""),
        )
    else:
        lifecycle_logger.info(
            "request_rejected path=%s kind=%s status=%d",
            sanitize_log_value(request.path),
            error.kind,
            error.status_code,
        )

    if request.path.startswith("/s/"):
        if isinstance(error, NotFoundError):
            slug = (request.view_args or {}).get("slug", "")
            return Response(
                NOT_FOUND_PAGE.format(slug=escape(slug)),
                status=404,
                mimetype="text/html",
            )
        return Response(error.message, status=error.status_code, mimetype="text/plain")
    if request.path.startswith("/d/"):
        return Response(error.message, status=error.status_code, mimetype="text/plain")
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    return jsonify({"error": "File too large"}), 413


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


def purge_expired_links() -> None:
    try:
        removed = service.purge_expired_links()
    except Exception as error:
        lifecycle_logger.exception("link_purge_failed error=%s", error)
        return
    if removed:
        lifecycle_logger.info("link_purge_completed removed=%d", removed)


def cleanup_temp_files() -> None:
    try:
        removed = service.cleanup_temp_files()
    except Exception as error:
        lifecycle_logger.exception("temp_cleanup_failed error=%s", error)
        return
    if removed:
        lifecycle_logger.info("temp_cleanup_completed removed=%d", removed)


scheduler = None
if config["scheduler_enabled"]:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=purge_expired_links,
        trigger="interval",
        minutes=max(1, config["alias_cleanup_minutes"]),
        id="purge_expired_links",
        name="Purge expired short links",
        replace_existing=True,
    )
    scheduler.add_job(
        func=cleanup_temp_files,
        trigger="interval",
        hours=1,
        id="cleanup_temp_files",
        name="Clean up temporary files",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))


@app.route("/health")
def health_check():
    payload: Dict[str, Any] = service.health()
    checks = payload["checks"]
    if scheduler is not None:
        job = scheduler.get_job("purge_expired_links")
        checks["link_purge"] = "scheduled" if job and job.next_run_time else "not_scheduled"
        checks["scheduler_running"] = bool(scheduler.running)
    else:
        checks["link_purge"] = "disabled"
        checks["scheduler_running"] = False

    payload["timestamp"] = time.time()
    code = 200 if payload["status"] == "healthy" else 503
    return jsonify(payload), code


@app.route("/api/upload", methods=["POST"])
@require_upload_password
@limiter.limit(lambda: upload_rate_limit_string())
def api_upload():
    # Reject a declared oversize body before the multipart parser reads it.
    service.precheck_upload(request.content_length)
    verify_bot_token()

    upload = request.files.get("file")
    if not isinstance(upload, FileStorage) or not upload.filename:
        lifecycle_logger.warning("upload_failed reason=no_file_part")
        raise NoFilePartError()

    with upload_stream_handler(upload):
        result = service.upload(
            upload.stream,
            upload.filename,
            upload.mimetype or None,
            request.content_length,
            authenticated=g.authenticated,
        )
    return jsonify(result.to_dict())


@app.route("/api/delete", methods=["POST"])
@require_upload_password
@limiter.limit(lambda: api_rate_limit_string())
def api_delete():
    payload = json_body()
    return jsonify(service.delete(payload.get("key"), authenticated=g.authenticated))


@app.route("/api/share", methods=["POST"])
@require_upload_password
@limiter.limit(lambda: api_rate_limit_string())
def api_share():
    payload = json_body()
    return jsonify(
        service.share(payload.get("key"), payload.get("ttl"), authenticated=g.authenticated)
    )


@app.route("/api/list")
@require_upload_password
@limiter.limit(lambda: api_rate_limit_string())
def api_list():
    return jsonify(
        service.list_recent(request.args.get("limit"), authenticated=g.authenticated)
    )


@app.route("/api/admin/files")
@require_upload_password
@limiter.limit(lambda: api_rate_limit_string())
def admin_files():
    page = service.list_catalog(
        request.args.get("cursor"),
        request.args.get("limit"),
        authenticated=g.authenticated,
    )
    return jsonify(page.to_dict())


@app.route("/api/admin/kv", methods=["GET", "DELETE"])
@require_upload_password
@limiter.limit(lambda: api_rate_limit_string())
def admin_links():
    if request.method == "DELETE":
        return jsonify(
            service.delete_alias(request.args.get("slug"), authenticated=g.authenticated)
        )
    return jsonify(service.list_aliases(authenticated=g.authenticated))


@app.route("/d/<path:key>")
@limiter.limit(lambda: download_rate_limit_string())
def download(key: str):
    force_download = request.args.get("download") == "1"
    stream = service.fetch(key, force_download=force_download)
    response = Response(
        stream.iter_chunks(),
        status=200,
        headers=stream.headers,
    )
    response.call_on_close(stream.close)
    return response


@app.route("/s/<slug>")
@limiter.limit(lambda: download_rate_limit_string())
def short_link(slug: str):
    return redirect(service.resolve(slug), code=302)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
