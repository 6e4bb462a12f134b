"""
Entitlement authority: the Discord REST calls needed to grant a role.

Raw API payloads are turned into ``Role`` / ``Identity`` values here and never
leave this module. Failures come back as one of three kinds:

* ``AuthorityUnavailable`` - the guild/actor state could not be determined,
  so nothing may be granted.
* ``GrantRejected`` - state is known and says the grant is not allowed
  (unknown role, missing permission, hierarchy).
* ``GrantFailed`` - the grant was sent and Discord refused or never answered.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import logging

import requests

from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, DISCORD_CB_CONFIG
from common.retry import RetryConfig, retry_call
from order_service.states import FailureReason

logger = logging.getLogger(__name__)

ADMINISTRATOR = 1 << 3
MANAGE_ROLES = 1 << 28

@dataclass(frozen=True)
class Role:
    id: str
    position: int
    permissions: int
    name: str = ""

@dataclass(frozen=True)
class Identity:
    id: str
    username: str = ""
    roles: Tuple[str, ...] = ()

@dataclass(frozen=True)
class UserProfile:
    id: str
    display_name: str
    avatar_url: Optional[str] = None

@dataclass(frozen=True)
class AuthorityContext:
    """The actor's standing in one guild, fetched fresh for each approval"""
    actor: Identity
    highest_position: int
    permissions: int
    roles: Dict[str, Role] = field(default_factory=dict)

    @property
    def can_manage_roles(self) -> bool:
        return bool(self.permissions & (MANAGE_ROLES | ADMINISTRATOR))

class AuthorityError(Exception):
    pass

class MissingBotToken(AuthorityError):
    def __init__(self):
        super().__init__("no bot token configured")

class AuthorityUnavailable(AuthorityError):
    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        self.status = status
        self.body = body
        super().__init__(message)

class GrantRejected(AuthorityError):
    reason: FailureReason = FailureReason.ROLE_PRECHECK_ERROR

    def __init__(self, role_id: str, message: str):
        self.role_id = role_id
        super().__init__(message)

class InvalidRole(GrantRejected):
    reason = FailureReason.INVALID_ROLE_ID

class MissingManageRoles(GrantRejected):
    reason = FailureReason.BOT_MISSING_MANAGE_ROLES

class RoleAboveActor(GrantRejected):
    reason = FailureReason.BOT_ROLE_HIERARCHY

class GrantFailed(AuthorityError):
    def __init__(self, role_id: str, status: Optional[int], body: Optional[str]):
        self.role_id = role_id
        self.status = status
        self.body = body
        super().__init__(f"grant of role {role_id} failed with HTTP {status}")

class TransientResponse(Exception):
    """A 429 or 5xx answer; retried, and returned as-is once retries run out"""
    def __init__(self, response):
        self.response = response
        self.retry_after = _retry_after(response)
        super().__init__(f"HTTP {response.status_code}")

def _retry_after(response) -> Optional[float]:
    value = response.headers.get("Retry-After") if response.headers else None
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None

def _parse_role(raw: Dict[str, Any]) -> Role:
    return Role(
        id=str(raw["id"]),
        position=int(raw.get("position", 0)),
        permissions=int(raw.get("permissions", 0)),
        name=raw.get("name", ""),
    )

class DiscordRoleAuthority:
    def __init__(
        self,
        bot_token: Optional[str],
        api_base: str = "https://discord.com/api/v10",
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        http: Optional[requests.Session] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig(
            max_attempts=4,
            base_delay=0.5,
            max_delay=60.0,
            retryable_exceptions=[TransientResponse, requests.ConnectionError, requests.Timeout],
        )
        self.http = http or requests.Session()
        self.breaker = breaker or CircuitBreaker("discord", DISCORD_CB_CONFIG)

    @classmethod
    def from_settings(cls, settings) -> "DiscordRoleAuthority":
        return cls(
            bot_token=settings.discord_bot_token,
            api_base=settings.discord_api_base,
            timeout=settings.discord_timeout_seconds,
            retry_config=RetryConfig(
                max_attempts=settings.discord_max_retries + 1,
                base_delay=settings.discord_backoff_seconds,
                max_delay=60.0,
                retryable_exceptions=[TransientResponse, requests.ConnectionError, requests.Timeout],
            ),
        )

    @property
    def call_budget_seconds(self) -> float:
        """Longest a single request can take: every attempt timing out plus the longest backoff between them"""
        attempts = self.retry_config.max_attempts
        return attempts * self.timeout + (attempts - 1) * self.retry_config.max_delay

    # --- transport ---------------------------------------------------------

    def _send(self, method: str, path: str, **kwargs):
        if not self.bot_token:
            raise MissingBotToken()
        url = f"{self.api_base}{path}"
        headers = {"Authorization": f"Bot {self.bot_token}", **kwargs.pop("headers", {})}

        def attempt():
            response = self.http.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            if response.status_code == 429 or response.status_code >= 500:
                raise TransientResponse(response)
            return response

        try:
            return self.breaker.call(retry_call, attempt, self.retry_config)
        except TransientResponse as e:
            return e.response

    def _get_json(self, path: str) -> Any:
        try:
            response = self._send("GET", path)
        except (requests.RequestException, CircuitBreakerException) as e:
            raise AuthorityUnavailable(f"GET {path} failed: {e}") from e
        if not response.ok:
            raise AuthorityUnavailable(f"GET {path} returned HTTP {response.status_code}",
                                       response.status_code, response.text)
        try:
            return response.json()
        except ValueError as e:
            raise AuthorityUnavailable(f"GET {path} returned invalid JSON") from e

    # --- reads -------------------------------------------------------------

    def fetch_roles(self, guild_id: str) -> List[Role]:
        payload = self._get_json(f"/guilds/{guild_id}/roles")
        try:
            return [_parse_role(raw) for raw in payload]
        except (KeyError, TypeError, ValueError) as e:
            raise AuthorityUnavailable(f"unexpected role payload for guild {guild_id}") from e

    def fetch_actor_identity(self) -> Identity:
        payload = self._get_json("/users/@me")
        try:
            return Identity(id=str(payload["id"]), username=payload.get("username", ""))
        except (KeyError, TypeError) as e:
            raise AuthorityUnavailable("unexpected identity payload") from e

    def fetch_actor_membership(self, guild_id: str, actor_id: str) -> List[str]:
        payload = self._get_json(f"/guilds/{guild_id}/members/{actor_id}")
        try:
            return [str(role_id) for role_id in payload.get("roles", [])]
        except (AttributeError, TypeError) as e:
            raise AuthorityUnavailable("unexpected member payload") from e

    def fetch_user(self, user_id: str) -> Optional[UserProfile]:
        """Display name and avatar for notification authorship; None if unknown"""
        try:
            payload = self._get_json(f"/users/{user_id}")
        except (AuthorityUnavailable, MissingBotToken) as e:
            logger.info(f"Could not look up user {user_id}: {e}")
            return None
        avatar = payload.get("avatar")
        avatar_url = f"https://cdn.discordapp.com/avatars/{user_id}/{avatar}.png" if avatar else None
        name = payload.get("global_name") or payload.get("username") or str(user_id)
        return UserProfile(id=str(user_id), display_name=name, avatar_url=avatar_url)

    def resolve_context(self, guild_id: str) -> AuthorityContext:
        """Fetch roles and the actor's memberships; never cached between calls"""
        if not self.bot_token:
            raise MissingBotToken()
        roles = {role.id: role for role in self.fetch_roles(guild_id)}
        me = self.fetch_actor_identity()
        member_roles = tuple(self.fetch_actor_membership(guild_id, me.id))

        held = [roles[role_id] for role_id in member_roles if role_id in roles]
        everyone = roles.get(str(guild_id))
        permissions = everyone.permissions if everyone else 0
        for role in held:
            permissions |= role.permissions
        highest = max((role.position for role in held), default=0)

        return AuthorityContext(
            actor=Identity(id=me.id, username=me.username, roles=member_roles),
            highest_position=highest,
            permissions=permissions,
            roles=roles,
        )

    # --- decisions ---------------------------------------------------------

    @staticmethod
    def check_grantable(context: AuthorityContext, role_id: str) -> Role:
        role = context.roles.get(str(role_id))
        if role is None:
            raise InvalidRole(role_id, f"role {role_id} does not exist in the guild")
        if not context.can_manage_roles:
            raise MissingManageRoles(role_id, "bot lacks the Manage Roles permission")
        if context.highest_position <= role.position:
            raise RoleAboveActor(
                role_id,
                f"bot's highest role position {context.highest_position} is not above role position {role.position}",
            )
        return role

    # --- writes ------------------------------------------------------------

    def grant_role(self, guild_id: str, user_id: str, role_id: str, audit_reason: Optional[str] = None) -> None:
        headers = {"X-Audit-Log-Reason": audit_reason} if audit_reason else {}
        try:
            response = self._send("PUT", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}", headers=headers)
        except (requests.RequestException, CircuitBreakerException) as e:
            raise GrantFailed(role_id, None, str(e)) from e
        if not response.ok:
            raise GrantFailed(role_id, response.status_code, response.text)
        logger.info(f"Granted role {role_id} to user {user_id} in guild {guild_id}")
