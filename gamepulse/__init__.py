import os

from flask import Flask
from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()


def create_app(database_uri: str | None = None, **config_overrides):
    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = (
        database_uri or os.environ.get("DATABASE_URL") or "sqlite:///gamepulse.db"
    )
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["REPORT_CACHE_STALE_SECONDS"] = 300
    app.config["REPORT_CACHE_GC_SECONDS"] = 600
    app.config.update(config_overrides)

    db.init_app(app)

    from .cache import QueryCache
    from .routes import bp as core_bp

    app.extensions["report_cache"] = QueryCache(
        stale_after=app.config["REPORT_CACHE_STALE_SECONDS"],
        gc_after=app.config["REPORT_CACHE_GC_SECONDS"],
    )
    app.register_blueprint(core_bp)

    with app.app_context():
        db.create_all()

    return app
