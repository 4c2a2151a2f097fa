from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, request
from flask_cors import CORS

from config import Config
from db import Base, init_engine
from utils import SimpleRateLimiter, err, now_monotonic


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL)

    import models  # noqa: F401  registers tables on Base

    Base.metadata.create_all(bind=engine)

    app = Flask(__name__)
    app.config["CFG"] = cfg
    app.config["JSON_SORT_KEYS"] = False
    app.extensions["rate_limiter"] = SimpleRateLimiter()

    CORS(
        app,
        origins=cfg.ALLOWED_ORIGINS,
        supports_credentials=False,
        allow_headers=["Content-Type", "X-User-Id", "X-User-Role", "X-Profile-Complete", "X-Gateway-Token", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.before_request
    def _before():
        incoming = str(request.headers.get("X-Request-ID") or "").strip()
        g.request_id = incoming[:64] if incoming else os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}", http_status=404, category="NOT_FOUND")

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed", http_status=405, category="VALIDATION")

    from app.routes.api import api_bp, rest_api
    from app.routes.core import core_bp
    from app.routes.jobs import jobs_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(api_bp)
    app.register_blueprint(rest_api, url_prefix="/api/v1")
    app.register_blueprint(jobs_bp, url_prefix="/api/v1/jobs")

    from app.scheduler import maybe_start_sweep_scheduler

    maybe_start_sweep_scheduler(cfg)
    return app
