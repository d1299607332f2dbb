"""Fixed-window rate limiter over the shared key-value store."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from fluxerp.config import Settings
from fluxerp.errors import StoreUnavailableError
from fluxerp.logging import get_logger
from fluxerp.store.base import KeyValueStore

logger = get_logger(__name__)

DEFAULT_MESSAGE = "Too many requests, please try again later"
HEALTH_PATHS = frozenset({"/health", "/health/live"})


class IdentityStrategy(str, Enum):
    """How a request is attributed to a rate limit bucket."""

    USER_OR_IP = "user_or_ip"
    AUTH_IP = "auth_ip"


class RateLimitPolicy(BaseModel):
    """Ceiling and window for one route class."""

    model_config = ConfigDict(frozen=True)

    name: str
    limit: int = Field(gt=0)
    window_ms: int = Field(gt=0)
    code: str = "RATE_LIMIT_EXCEEDED"
    message: str = DEFAULT_MESSAGE
    identity: IdentityStrategy = IdentityStrategy.USER_OR_IP
    exempt_paths: frozenset[str] = frozenset()

    def resolve_identity(self, user_id: str | None, address: str | None) -> str:
        """
        Build the identity key for a request.

        Authenticated requests count per user, anonymous ones per address.
        Auth policies always count per address since the caller is not
        authenticated yet.
        """
        address = address or "unknown"
        if self.identity == IdentityStrategy.AUTH_IP:
            return f"auth:{address}"
        if user_id:
            return f"user:{user_id}"
        return f"ip:{address}"


class RateLimitResult(BaseModel):
    """Outcome of counting one request."""

    allowed: bool
    count: int
    limit: int
    remaining: int
    reset_after_ms: int


class RateLimitPolicies(BaseModel):
    """Policies configured per route class."""

    general: RateLimitPolicy
    ai: RateLimitPolicy
    auth: RateLimitPolicy
    strict: RateLimitPolicy
    read_only: RateLimitPolicy

    def get(self, name: str) -> RateLimitPolicy:
        """Look up a policy by name."""
        policy = getattr(self, name, None)
        if not isinstance(policy, RateLimitPolicy):
            raise KeyError(f"Unknown rate limit policy: {name}")
        return policy


def build_policies(settings: Settings) -> RateLimitPolicies:
    """Build the standard policies from settings."""
    window_ms = settings.rate_limit_window_ms
    return RateLimitPolicies(
        general=RateLimitPolicy(
            name="general",
            limit=settings.rate_limit_max,
            window_ms=window_ms,
            exempt_paths=HEALTH_PATHS,
        ),
        ai=RateLimitPolicy(
            name="ai",
            limit=settings.rate_limit_ai_max,
            window_ms=window_ms,
            code="AI_RATE_LIMIT_EXCEEDED",
            message="AI rate limit exceeded. Please wait before trying again.",
        ),
        auth=RateLimitPolicy(
            name="auth",
            limit=settings.rate_limit_auth_max,
            window_ms=window_ms,
            code="AUTH_RATE_LIMIT_EXCEEDED",
            message="Too many login attempts. Please try again later.",
            identity=IdentityStrategy.AUTH_IP,
        ),
        strict=RateLimitPolicy(
            name="strict",
            limit=settings.rate_limit_strict_max,
            window_ms=window_ms,
        ),
        read_only=RateLimitPolicy(
            name="read_only",
            limit=settings.rate_limit_read_only_max,
            window_ms=window_ms,
        ),
    )


def create_policy(
    settings: Settings,
    window_ms: int | None = None,
    limit: int | None = None,
    message: str | None = None,
    name: str | None = None,
) -> RateLimitPolicy:
    """Mint an ad hoc policy; unset values fall back to the general policy's."""
    window_ms = window_ms or settings.rate_limit_window_ms
    limit = limit or settings.rate_limit_max
    return RateLimitPolicy(
        name=name or f"custom-{limit}-{window_ms}",
        limit=limit,
        window_ms=window_ms,
        message=message or DEFAULT_MESSAGE,
    )


class RateLimiter:
    """
    Counts requests per (policy, identity) in fixed windows.

    The first request of a window creates the counter with a TTL of the
    window length; the counter expires on its own. If the store is down the
    limiter lets requests through.
    """

    KEY_PREFIX = "ratelimit"

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def _key(self, policy: RateLimitPolicy, identity: str) -> str:
        return f"{self.KEY_PREFIX}:{policy.name}:{identity}"

    async def hit(self, policy: RateLimitPolicy, identity: str) -> RateLimitResult:
        """Count one request and decide whether it may proceed."""
        try:
            count, reset_after_ms = await self._store.incr_window(
                self._key(policy, identity),
                policy.window_ms,
            )
        except StoreUnavailableError as e:
            logger.warning(
                "Rate limit store unavailable, allowing request",
                policy=policy.name,
                identity=identity,
                error=str(e),
            )
            return RateLimitResult(
                allowed=True,
                count=0,
                limit=policy.limit,
                remaining=policy.limit,
                reset_after_ms=policy.window_ms,
            )

        allowed = count <= policy.limit
        if not allowed:
            logger.info(
                "Rate limit reached",
                policy=policy.name,
                identity=identity,
                count=count,
                limit=policy.limit,
            )

        return RateLimitResult(
            allowed=allowed,
            count=count,
            limit=policy.limit,
            remaining=max(0, policy.limit - count),
            reset_after_ms=reset_after_ms,
        )
