"""Environment-driven settings for the portal client."""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from models import GuardPolicy

logger = logging.getLogger("config")

DEFAULT_REACHABILITY_URL = "https://www.google.com/generate_204"

# Retry/breaker policy per operation class
DEFAULT_POLICIES: dict[str, GuardPolicy] = {
    "session-check": GuardPolicy(max_attempts=3, initial_delay=1.0, per_attempt_timeout=10.0),
    "session-fallback": GuardPolicy(max_attempts=1, per_attempt_timeout=10.0),
    "session-refresh": GuardPolicy(max_attempts=3, initial_delay=2.0, per_attempt_timeout=15.0),
    "sign-in": GuardPolicy(max_attempts=3, initial_delay=1.0, per_attempt_timeout=15.0),
    "sign-out": GuardPolicy(max_attempts=1, per_attempt_timeout=8.0),
    "password-reset": GuardPolicy(max_attempts=2, initial_delay=1.0, per_attempt_timeout=10.0),
    "profile-fetch": GuardPolicy(max_attempts=3, initial_delay=1.0, per_attempt_timeout=10.0),
    "profile-update": GuardPolicy(max_attempts=2, initial_delay=1.0, per_attempt_timeout=8.0),
    "therapist-list": GuardPolicy(max_attempts=3, initial_delay=1.0, per_attempt_timeout=10.0),
    "therapist-select": GuardPolicy(max_attempts=1, per_attempt_timeout=8.0),
}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


@dataclass(frozen=True)
class Settings:
    supabase_url: str
    supabase_anon_key: str
    redis_url: str = "redis://localhost:6379"
    cache_namespace: str = "portal"
    auth_timeout: float = 30.0  # One overall timeout for initialize()
    session_buffer: float = 600.0  # Seconds subtracted from expiry
    reachability_url: str | None = DEFAULT_REACHABILITY_URL
    reachability_timeout: float = 5.0
    circuit_cooldown: float = 30.0
    policies: dict[str, GuardPolicy] = field(
        default_factory=lambda: dict(DEFAULT_POLICIES)
    )

    @classmethod
    def from_env(cls, env_file: str | None = ".env.local") -> "Settings":
        """Build settings from the process environment (and an optional .env file)."""
        if env_file:
            load_dotenv(env_file)

        supabase_url = os.getenv("SUPABASE_URL", "")
        supabase_anon_key = os.getenv("SUPABASE_ANON_KEY", "")
        if not supabase_url or not supabase_anon_key:
            logger.warning("SUPABASE_URL or SUPABASE_ANON_KEY not set")

        cooldown = _float_env("CIRCUIT_COOLDOWN_SECONDS", 30.0)
        policies = {
            name: GuardPolicy(
                max_attempts=policy.max_attempts,
                initial_delay=policy.initial_delay,
                backoff_multiplier=policy.backoff_multiplier,
                per_attempt_timeout=policy.per_attempt_timeout,
                circuit_cooldown=cooldown,
            )
            for name, policy in DEFAULT_POLICIES.items()
        }

        # An empty REACHABILITY_URL disables the probe
        reachability_url = os.getenv("REACHABILITY_URL", DEFAULT_REACHABILITY_URL)

        return cls(
            supabase_url=supabase_url.rstrip("/"),
            supabase_anon_key=supabase_anon_key,
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            cache_namespace=os.getenv("PORTAL_CACHE_NAMESPACE", "portal"),
            auth_timeout=_float_env("AUTH_TIMEOUT_SECONDS", 30.0),
            session_buffer=_float_env("SESSION_BUFFER_SECONDS", 600.0),
            reachability_url=reachability_url or None,
            reachability_timeout=_float_env("REACHABILITY_TIMEOUT_SECONDS", 5.0),
            circuit_cooldown=cooldown,
            policies=policies,
        )

    def policy(self, operation_class: str) -> GuardPolicy:
        return self.policies.get(
            operation_class, GuardPolicy(circuit_cooldown=self.circuit_cooldown)
        )
