import logging
from typing import Optional

from flask import Flask, Response, jsonify, render_template
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from gateway import Settings, UpstreamUnavailable, build_stub, fetch_upstream

PORT = 8080

logger = logging.getLogger("dashboard-proxy")


# ----------------------
# App Setup
# ----------------------
def create_app(settings: Optional[Settings] = None) -> Flask:
    settings = settings or Settings.from_env()

    app = Flask(__name__)
    app.config["RATELIMIT_ENABLED"] = settings.rate_limit_enabled
    CORS(app, origins=[settings.frontend_origin])

    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=[settings.rate_limit],
        storage_uri="memory://",
    )

    # ----------------------
    # Endpoints
    # ----------------------
    @app.route("/health", methods=["GET"])
    @limiter.exempt
    def health_check():
        return jsonify({"status": "proxy-running"}), 200

    @app.route("/", methods=["GET"])
    def dashboard():
        # records are loaded client-side from /api/proxy/data
        return render_template("dashboard.html", title=settings.dashboard_title)

    @app.route("/api/proxy/data", methods=["GET"])
    @limiter.exempt
    def proxy_data():
        try:
            body = fetch_upstream(settings)
        except UpstreamUnavailable as e:
            logger.warning("Upstream request to %s failed: %s (%s)", settings.data_url, e.reason, e.detail)
            return jsonify(build_stub(e.reason)), 200
        return Response(body, status=200, mimetype="application/json")

    return app


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))


settings = Settings.from_env()
configure_logging(settings)
app = create_app(settings)

if __name__ == "__main__":
    logger.info("Dashboard proxy running on port %d, upstream %s", PORT, settings.upstream_url)
    app.run(host="0.0.0.0", port=PORT, threaded=True)
