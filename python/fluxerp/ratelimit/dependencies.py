"""FastAPI dependencies that apply rate limit policies to routes."""

import itertools
import math

from fastapi import Request, Response

from fluxerp.errors import RateLimitExceededError
from fluxerp.ratelimit.limiter import RateLimitPolicy, create_policy

_custom_ids = itertools.count(1)


class RateLimitDependency:
    """
    Route dependency enforcing one policy.

    Usage:
        @router.post("/analyze", dependencies=[Depends(ai_limiter)])

    The policy is either given directly or looked up by name in the
    application's configured policies, so limits follow settings.
    """

    def __init__(
        self,
        policy: str | RateLimitPolicy,
        *,
        window_ms: int | None = None,
        limit: int | None = None,
        message: str | None = None,
    ) -> None:
        self._policy = policy
        self._overrides = (window_ms, limit, message)
        # Each ad hoc limiter counts in its own buckets
        self._name = f"custom-{next(_custom_ids)}" if policy == "custom" else None

    def _resolve_policy(self, request: Request) -> RateLimitPolicy:
        if isinstance(self._policy, RateLimitPolicy):
            return self._policy

        services = request.app.state.services
        if self._policy == "custom":
            window_ms, limit, message = self._overrides
            return create_policy(services.settings, window_ms, limit, message, name=self._name)
        return services.rate_limit_policies.get(self._policy)

    async def __call__(self, request: Request, response: Response) -> None:
        policy = self._resolve_policy(request)
        if request.url.path in policy.exempt_paths:
            return

        identity = policy.resolve_identity(
            getattr(request.state, "user_id", None),
            request.client.host if request.client else None,
        )
        result = await request.app.state.services.rate_limiter.hit(policy, identity)

        response.headers["RateLimit-Limit"] = str(result.limit)
        response.headers["RateLimit-Remaining"] = str(result.remaining)
        response.headers["RateLimit-Reset"] = str(math.ceil(result.reset_after_ms / 1000))

        if not result.allowed:
            raise RateLimitExceededError(
                message=policy.message,
                code=policy.code,
                retry_after_ms=result.reset_after_ms,
            )


def create_rate_limiter(
    window_ms: int | None = None,
    limit: int | None = None,
    message: str | None = None,
) -> RateLimitDependency:
    """Create a dependency with an ad hoc policy (defaults from the general policy)."""
    return RateLimitDependency("custom", window_ms=window_ms, limit=limit, message=message)


# Standard limiters
general_limiter = RateLimitDependency("general")
ai_limiter = RateLimitDependency("ai")
auth_limiter = RateLimitDependency("auth")
strict_limiter = RateLimitDependency("strict")
read_only_limiter = RateLimitDependency("read_only")
