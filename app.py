# app.py

import logging
import os
from http import HTTPStatus

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

# .env must be loaded before the config classes read os.environ
load_dotenv()

from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.validation import validate_and_exit  # noqa: E402
from crm_app.importer import init_importer  # noqa: E402
from crm_app.middleware.tenant_context import init_tenant_context_middleware  # noqa: E402
from crm_app.models import db  # noqa: E402
from crm_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

CONFIG_BY_ENV = {
    "production": ProductionConfig,
    "testing": TestingConfig,
    "development": DevelopmentConfig,
}

flask_env = os.environ.get("FLASK_ENV", "development")
if flask_env == "production":
    validate_and_exit(flask_env)

app = Flask(__name__)
app.config.from_object(CONFIG_BY_ENV.get(flask_env, DevelopmentConfig))

db.init_app(app)
setup_logging(app)
init_tenant_context_middleware(app)


def _sqlite_pragmas(*, foreign_keys: bool):
    """Build a ``connect`` listener that tunes SQLite for a web process plus a worker."""
    statements = ["PRAGMA journal_mode=WAL", "PRAGMA synchronous=NORMAL", "PRAGMA busy_timeout=5000"]
    if foreign_keys:
        statements.append("PRAGMA foreign_keys=ON")

    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        cursor = dbapi_connection.cursor()
        for statement in statements:
            cursor.execute(statement)
        cursor.close()

    return _on_connect


with app.app_context():
    engine = db.engine
    if engine.url.drivername.startswith("sqlite") and not getattr(engine, "_crm_pragmas", False):
        event.listen(engine, "connect", _sqlite_pragmas(foreign_keys=not app.config.get("TESTING", False)))
        engine._crm_pragmas = True  # type: ignore[attr-defined]
    if not app.config.get("TESTING", False):
        db.create_all()

init_importer(app)


@app.errorhandler(HTTPStatus.NOT_FOUND)
def not_found_error(error):
    return jsonify({"error": "Not found."}), HTTPStatus.NOT_FOUND


@app.errorhandler(HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
def request_too_large(error):
    return jsonify({"error": "Upload exceeds maximum size limit."}), HTTPStatus.REQUEST_ENTITY_TOO_LARGE


@app.errorhandler(HTTPStatus.INTERNAL_SERVER_ERROR)
def internal_error(error):
    db.session.rollback()
    logger.error("Unhandled error: %s", error)
    return jsonify({"error": "Internal server error."}), HTTPStatus.INTERNAL_SERVER_ERROR


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
