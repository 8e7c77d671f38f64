import sys
import logging
from flask import Flask
from dotenv import load_dotenv


def create_app():
    load_dotenv()
    app = Flask(__name__)

    # =========================================================
    # Logging: reuse gunicorn's handlers when served by it
    # =========================================================
    gunicorn_error = logging.getLogger("gunicorn.error")
    app.logger.handlers = list(gunicorn_error.handlers)
    app.logger.setLevel(logging.INFO)

    sh = logging.StreamHandler(sys.stdout)
    sh.setLevel(logging.INFO)
    sh.setFormatter(logging.Formatter("[%(asctime)s][%(levelname)s] %(message)s", "%H:%M:%S"))
    app.logger.addHandler(sh)

    # =========================================================
    # Database
    # =========================================================
    from .db import init_db
    init_db()

    # =========================================================
    # Blueprints & CLI
    # =========================================================
    from .routes.sync import bp as sync_bp
    from .cli import sync_cli

    app.register_blueprint(sync_bp, url_prefix="/sync")
    app.cli.add_command(sync_cli)

    # =========================================================
    # Health check
    # =========================================================
    @app.get("/health")
    def health():
        app.logger.info("Health check endpoint called")
        return {"ok": True}, 200

    return app
