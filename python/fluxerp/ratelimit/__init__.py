"""Per-identity request rate limiting."""

from fluxerp.ratelimit.dependencies import (
    RateLimitDependency,
    ai_limiter,
    auth_limiter,
    create_rate_limiter,
    general_limiter,
    read_only_limiter,
    strict_limiter,
)
from fluxerp.ratelimit.limiter import (
    IdentityStrategy,
    RateLimitPolicies,
    RateLimitPolicy,
    RateLimitResult,
    RateLimiter,
    build_policies,
    create_policy,
)

__all__ = [
    "IdentityStrategy",
    "RateLimitDependency",
    "RateLimitPolicies",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateLimiter",
    "ai_limiter",
    "auth_limiter",
    "build_policies",
    "create_policy",
    "create_rate_limiter",
    "general_limiter",
    "read_only_limiter",
    "strict_limiter",
]
