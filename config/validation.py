# config/validation.py

"""
Startup checks for production environment variables.

Only ``FLASK_ENV=production`` is validated; development and testing run with
the defaults from ``config.base``.
"""

import os
import sys
from typing import Callable, List, Mapping, Optional, Tuple

from .base import AMBIGUOUS_POLICIES

PLACEHOLDER_SECRETS = {"", "your-secret-key", "your_secret_key"}


def _is_true(env: Mapping[str, str], key: str) -> bool:
    return env.get(key, "false").strip().lower() == "true"


def _check_secret_key(env: Mapping[str, str]) -> List[str]:
    if env.get("SECRET_KEY", "") in PLACEHOLDER_SECRETS:
        return [
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        ]
    return []


def _check_database(env: Mapping[str, str]) -> List[str]:
    if not env.get("DATABASE_URL"):
        return ["DATABASE_URL is required in production. Set it to your PostgreSQL connection string."]
    return []


def _check_importer(env: Mapping[str, str]) -> List[str]:
    errors = []
    policy = env.get("IMPORTER_AMBIGUOUS_POLICY")
    if _is_true(env, "IMPORTER_ENABLED"):
        if not policy:
            errors.append(
                "IMPORTER_AMBIGUOUS_POLICY must be set explicitly in production "
                f"({' or '.join(AMBIGUOUS_POLICIES)})."
            )
        if _is_true(env, "IMPORTER_WORKER_ENABLED") and not env.get("CELERY_BROKER_URL"):
            errors.append("CELERY_BROKER_URL is required when IMPORTER_WORKER_ENABLED=true")
    if policy and policy.strip().lower() not in AMBIGUOUS_POLICIES:
        errors.append(f"IMPORTER_AMBIGUOUS_POLICY must be one of: {', '.join(AMBIGUOUS_POLICIES)}")
    return errors


CHECKS: Tuple[Callable[[Mapping[str, str]], List[str]], ...] = (
    _check_secret_key,
    _check_database,
    _check_importer,
)


def validate_environment(flask_env: Optional[str] = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Returns:
        Tuple of (is_valid, list_of_errors). Non-production environments are
        always valid.
    """
    flask_env = flask_env or os.environ.get("FLASK_ENV", "development")
    if flask_env != "production":
        return True, []

    errors = [message for check in CHECKS for message in check(os.environ)]
    return not errors, errors


def validate_and_exit(flask_env: Optional[str] = None) -> None:
    """Print every validation error to stderr and exit with status 1 if any were found."""
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    rule = "=" * 80
    lines = [rule, "ENVIRONMENT VALIDATION FAILED", rule, "", "The following environment variables are missing or invalid:", ""]
    lines.extend(f"{index}. {error}" for index, error in enumerate(errors, 1))
    lines.extend(["", rule, "Please check your .env file or environment variables.", rule])
    print("\n".join(lines), file=sys.stderr)
    sys.exit(1)
