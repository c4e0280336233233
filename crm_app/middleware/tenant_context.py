# crm_app/middleware/tenant_context.py

from flask import current_app, g, request

from crm_app.models import Team

TENANT_HEADER = "X-Tenant-Id"
USER_HEADER = "X-User-Id"


def _parse_int(value):
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def init_tenant_context_middleware(app):
    """Initialize tenant context middleware"""

    @app.before_request
    def set_tenant_context():
        """Resolve the current team and user from the gateway headers."""
        g.current_team = None
        g.current_user_id = None

        if request.endpoint in ("static",):
            return

        raw_team_id = request.headers.get(TENANT_HEADER)
        team_id = _parse_int(raw_team_id)
        if raw_team_id and team_id is None:
            current_app.logger.warning(f"Invalid tenant id header: {raw_team_id}")

        if team_id is not None:
            team = Team.find_by_id(team_id)
            if team is not None and not team.is_active:
                current_app.logger.warning(f"Attempted access to inactive team: {team.id}")
                team = None
            g.current_team = team

        g.current_user_id = _parse_int(request.headers.get(USER_HEADER))


def get_current_team():
    """Return the team resolved for this request, if any."""
    return getattr(g, "current_team", None)


def get_current_user_id():
    """Return the user id forwarded for this request, if any."""
    return getattr(g, "current_user_id", None)
