# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from crm_app.models import Team, db  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "LOG_LEVEL": "DEBUG",
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": True,
            "IMPORTER_ENABLED": True,
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_STORAGE_DIR": str(tmp_path / "imports"),
            "IMPORTER_UPLOAD_DIR": str(tmp_path / "uploads"),
            "IMPORTER_AMBIGUOUS_POLICY": "skip",
            "IMPORTER_BATCH_SIZE": 500,
            "IMPORTER_MAX_ROWS": 10000,
            "IMPORTER_PREVIEW_SAMPLE_SIZE": 50,
            "IMPORTER_VALUES_PAGE_SIZE": 50,
            "IMPORTER_ALLOW_TWO_DIGIT_YEARS": True,
            "IMPORTER_PUBLIC_EMAIL_DOMAINS_ENABLED": True,
            "CELERY_CONFIG": None,
        }
    )

    # Re-initialize logging with updated config to pick up LOG_LEVEL=DEBUG
    from crm_app.utils.logging_config import setup_logging

    setup_logging(flask_app)
    flask_app.extensions["importer"]["worker_enabled"] = False

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def team():
    team = Team(name="Acme Sales", slug="acme-sales", is_active=True)
    db.session.add(team)
    db.session.commit()
    return team


@pytest.fixture
def other_team():
    team = Team(name="Globex Sales", slug="globex-sales", is_active=True)
    db.session.add(team)
    db.session.commit()
    return team


@pytest.fixture
def tenant_headers(team):
    return {"X-Tenant-Id": str(team.id), "X-User-Id": "7"}
