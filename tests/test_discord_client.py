import json

import pytest
import requests

from common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from common.retry import RetryConfig
from order_service.discord_client import (
    AuthorityUnavailable, DiscordRoleAuthority, GrantFailed, InvalidRole, MANAGE_ROLES,
    MissingBotToken, MissingManageRoles, RoleAboveActor, TransientResponse,
)
from order_service.states import FailureReason

API = "https://discord.test/api"
GUILD = "900"

class FakeResponse:
    def __init__(self, status_code, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = json.dumps(payload) if payload is not None else ""

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload

class FakeHttp:
    """Routes (method, path) to a queue of responses; the last one repeats"""

    def __init__(self, routes):
        self.routes = {key: list(value) for key, value in routes.items()}
        self.calls = []

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        path = url[len(API):]
        self.calls.append((method, path, headers, timeout))
        queue = self.routes[(method, path)]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

def _client(routes, token="secret", attempts=3, breaker=None):
    http = FakeHttp(routes)
    client = DiscordRoleAuthority(
        bot_token=token,
        api_base=API,
        timeout=2.5,
        retry_config=RetryConfig(max_attempts=attempts, base_delay=0, jitter=False,
                                 retryable_exceptions=[TransientResponse, requests.ConnectionError]),
        http=http,
        breaker=breaker,
    )
    return client, http

ROLES = [
    {"id": GUILD, "name": "@everyone", "position": 0, "permissions": "0"},
    {"id": "bot", "name": "Bot", "position": 10, "permissions": str(MANAGE_ROLES)},
    {"id": "vip", "name": "VIP", "position": 4, "permissions": "0"},
    {"id": "mod", "name": "Mod", "position": 12, "permissions": "0"},
]

def _context_routes(roles=ROLES, bot_roles=("bot",)):
    return {
        ("GET", f"/guilds/{GUILD}/roles"): [FakeResponse(200, roles)],
        ("GET", "/users/@me"): [FakeResponse(200, {"id": "b1", "username": "store-bot"})],
        ("GET", f"/guilds/{GUILD}/members/b1"): [FakeResponse(200, {"roles": list(bot_roles)})],
    }

class TestResolveContext:
    def test_builds_typed_context(self):
        client, http = _client(_context_routes())

        context = client.resolve_context(GUILD)

        assert context.actor.id == "b1"
        assert context.actor.roles == ("bot",)
        assert context.highest_position == 10
        assert context.can_manage_roles
        assert set(context.roles) == {GUILD, "bot", "vip", "mod"}
        assert http.calls[0][2]["Authorization"] == "Bot secret"
        assert http.calls[0][3] == 2.5

    def test_everyone_permissions_are_included(self):
        roles = [{"id": GUILD, "position": 0, "permissions": str(MANAGE_ROLES)},
                 {"id": "bot", "position": 3, "permissions": "0"}]
        client, _ = _client(_context_routes(roles=roles))

        assert client.resolve_context(GUILD).can_manage_roles

    def test_fetched_fresh_every_time(self):
        client, http = _client(_context_routes())

        client.resolve_context(GUILD)
        client.resolve_context(GUILD)

        assert [c[1] for c in http.calls].count(f"/guilds/{GUILD}/roles") == 2

    def test_role_fetch_error_is_unavailable(self):
        routes = _context_routes()
        routes[("GET", f"/guilds/{GUILD}/roles")] = [FakeResponse(403, {"message": "Missing Access"})]
        client, _ = _client(routes)

        with pytest.raises(AuthorityUnavailable) as exc:
            client.resolve_context(GUILD)
        assert exc.value.status == 403

    def test_network_error_is_unavailable(self):
        routes = _context_routes()
        routes[("GET", f"/guilds/{GUILD}/roles")] = [requests.ConnectionError("reset")]
        client, http = _client(routes)

        with pytest.raises(AuthorityUnavailable):
            client.resolve_context(GUILD)
        assert len(http.calls) == 3

    def test_malformed_roles_are_unavailable(self):
        routes = _context_routes(roles=[{"name": "no id"}])
        client, _ = _client(routes)

        with pytest.raises(AuthorityUnavailable):
            client.resolve_context(GUILD)

    def test_missing_token_makes_no_calls(self):
        client, http = _client(_context_routes(), token=None)

        with pytest.raises(MissingBotToken):
            client.resolve_context(GUILD)
        assert http.calls == []

class TestCheckGrantable:
    @pytest.fixture
    def context(self):
        client, _ = _client(_context_routes())
        return client.resolve_context(GUILD)

    def test_role_below_actor(self, context):
        assert DiscordRoleAuthority.check_grantable(context, "vip").position == 4

    def test_unknown_role(self, context):
        with pytest.raises(InvalidRole) as exc:
            DiscordRoleAuthority.check_grantable(context, "ghost")
        assert exc.value.reason == FailureReason.INVALID_ROLE_ID

    def test_role_above_actor(self, context):
        with pytest.raises(RoleAboveActor) as exc:
            DiscordRoleAuthority.check_grantable(context, "mod")
        assert exc.value.reason == FailureReason.BOT_ROLE_HIERARCHY

    def test_equal_rank_is_not_enough(self, context):
        with pytest.raises(RoleAboveActor):
            DiscordRoleAuthority.check_grantable(context, "bot")

    def test_permission_checked_before_hierarchy(self):
        roles = [dict(r, permissions="0") for r in ROLES]
        client, _ = _client(_context_routes(roles=roles))
        context = client.resolve_context(GUILD)

        with pytest.raises(MissingManageRoles):
            DiscordRoleAuthority.check_grantable(context, "mod")

class TestGrantRole:
    PATH = f"/guilds/{GUILD}/members/u1/roles/vip"

    def test_success(self):
        client, http = _client({("PUT", self.PATH): [FakeResponse(204)]})

        client.grant_role(GUILD, "u1", "vip", audit_reason="store order o1")

        assert http.calls[0][2]["X-Audit-Log-Reason"] == "store order o1"

    def test_rate_limit_is_retried(self):
        client, http = _client({("PUT", self.PATH): [
            FakeResponse(429, {"retry_after": 0}, headers={"Retry-After": "0"}),
            FakeResponse(204),
        ]})

        client.grant_role(GUILD, "u1", "vip")

        assert len(http.calls) == 2

    def test_business_failure_is_not_retried(self):
        client, http = _client({("PUT", self.PATH): [FakeResponse(403, {"message": "Missing Permissions"})]})

        with pytest.raises(GrantFailed) as exc:
            client.grant_role(GUILD, "u1", "vip")

        assert exc.value.status == 403
        assert "Missing Permissions" in exc.value.body
        assert len(http.calls) == 1

    def test_server_errors_exhaust_retry_budget(self):
        client, http = _client({("PUT", self.PATH): [FakeResponse(503, {"message": "unavailable"})]})

        with pytest.raises(GrantFailed) as exc:
            client.grant_role(GUILD, "u1", "vip")

        assert exc.value.status == 503
        assert len(http.calls) == 3

    def test_network_failure_is_delivery_failure(self):
        client, _ = _client({("PUT", self.PATH): [requests.ConnectionError("refused")]})

        with pytest.raises(GrantFailed) as exc:
            client.grant_role(GUILD, "u1", "vip")
        assert exc.value.status is None

    def test_open_circuit_fails_fast(self):
        breaker = CircuitBreaker("discord-test", CircuitBreakerConfig(failure_threshold=1, reset_timeout=60))
        client, http = _client({("PUT", self.PATH): [FakeResponse(500)]}, attempts=1, breaker=breaker)

        with pytest.raises(GrantFailed):
            client.grant_role(GUILD, "u1", "vip")
        with pytest.raises(GrantFailed) as exc:
            client.grant_role(GUILD, "u1", "vip")

        assert "open" in exc.value.body
        assert len(http.calls) == 1

def test_fetch_user_profile():
    client, _ = _client({("GET", "/users/77"): [FakeResponse(200, {"id": "77", "username": "mod", "global_name": "Moderator", "avatar": "abc"})]})

    profile = client.fetch_user("77")

    assert profile.display_name == "Moderator"
    assert profile.avatar_url == "https://cdn.discordapp.com/avatars/77/abc.png"

def test_fetch_user_unknown_is_none():
    client, _ = _client({("GET", "/users/77"): [FakeResponse(404, {"message": "Unknown User"})]})

    assert client.fetch_user("77") is None

def test_call_budget_covers_every_attempt():
    client, _ = _client({}, attempts=3)

    # 3 attempts at 2.5s plus 2 backoffs capped at 60s
    assert client.call_budget_seconds == 3 * 2.5 + 2 * 60.0
