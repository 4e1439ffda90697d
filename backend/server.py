"""
Flask application entry point for the OPD token engine.
"""

import logging

from flask import Flask

from opd_tokens.config import config
from opd_tokens.api.tokens import bp as tokens_bp
from opd_tokens.services.engine import build_token_engine


def create_app(engine=None, init_database: bool = False):
    """Create and configure Flask app."""
    app = Flask(__name__)

    # Load config
    app.config["SECRET_KEY"] = config.SECRET_KEY
    app.config["DEBUG"] = config.DEBUG
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    if engine is None:
        engine = build_token_engine(
            deadline_seconds=config.ALLOCATION_DEADLINE_SECONDS,
            create_tables=init_database,
        )
        engine.start_background_tasks(config.IN_FLIGHT_SWEEP_INTERVAL_SECONDS)
    app.extensions["token_engine"] = engine

    # Register blueprints
    app.register_blueprint(tokens_bp)  # /api/v1/tokens/*

    # Health check endpoint
    @app.route("/health")
    def health():
        return {
            "status": "ok",
            "database_mode": config.DATABASE_MODE,
            "operations_in_flight": len(engine.in_flight),
        }

    return app


if __name__ == "__main__":
    app = create_app(init_database=config.DATABASE_MODE == "sqlite")
    print(f"[OPD Tokens] Starting server on port 5001...")
    print(f"[OPD Tokens] Database mode: {config.DATABASE_MODE}")
    print(f"[OPD Tokens] Debug mode: {config.DEBUG}")
    print(f"[OPD Tokens] Routes:")
    print(f"  - /api/v1/tokens/* (Token allocation)")
    print(f"  - /health (Health check)")
    app.run(debug=config.DEBUG, port=5001)
