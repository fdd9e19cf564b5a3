"""Rate limiting for inbound requests and retry utilities for Replicate calls."""
import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional, Tuple
from tryon_vault.api.exceptions import (
    RateLimitError, UpstreamRateLimitError, UpstreamTransientError
)
from tryon_vault.config.logging import get_logger
from tryon_vault.config.settings import settings
from tryon_vault.utils.store import InMemoryStore, KeyValueStore

logger = get_logger("rate_limiter")


class EndpointClass:
    AUTH = "auth"
    SESSION = "session"
    UPSTREAM = "upstream"
    GENERAL = "general"


class RateLimitPolicy(NamedTuple):
    limit: int
    window_seconds: float
    message: str


@dataclass
class RateLimitBucket:
    window_start: float
    count: int
    limit: int
    window_seconds: float


class RateLimitDecision(NamedTuple):
    allowed: bool
    limit: int
    remaining: int
    retry_after: int


def default_policies() -> Dict[str, RateLimitPolicy]:
    return {
        EndpointClass.AUTH: RateLimitPolicy(
            settings.auth_rate_limit, settings.auth_rate_window_seconds,
            "Authentication rate limit exceeded. Please try again in 15 minutes."
        ),
        EndpointClass.SESSION: RateLimitPolicy(
            settings.session_rate_limit, settings.session_rate_window_seconds,
            "Session validation rate limit exceeded. Please slow down."
        ),
        EndpointClass.UPSTREAM: RateLimitPolicy(
            settings.upstream_rate_limit, settings.upstream_rate_window_seconds,
            "Replicate API rate limit exceeded. Please wait before making more requests."
        ),
        EndpointClass.GENERAL: RateLimitPolicy(
            settings.general_rate_limit, settings.general_rate_window_seconds,
            "Rate limit exceeded. Please try again later."
        ),
    }


class RateLimiter:
    """Fixed-window request counters per (client key, endpoint class)."""
    
    def __init__(self,
                 policies: Optional[Dict[str, RateLimitPolicy]] = None,
                 store: Optional[KeyValueStore[Tuple[str, str], RateLimitBucket]] = None,
                 clock: Callable[[], float] = time.time):
        self.policies = policies if policies is not None else default_policies()
        self.store = store if store is not None else InMemoryStore()
        self._clock = clock
    
    def hit(self, client_key: str, endpoint_class: str) -> RateLimitDecision:
        """Count one request and decide whether it may proceed."""
        policy = self.policies.get(endpoint_class)
        if policy is None:
            raise ValueError(f"Unknown endpoint class: {endpoint_class}")
        
        key = (client_key, endpoint_class)
        with self.store.transaction():
            now = self._clock()
            bucket = self.store.get(key)
            
            # Start a fresh window when none exists or the old one has elapsed
            if bucket is None or now - bucket.window_start >= bucket.window_seconds:
                bucket = RateLimitBucket(
                    window_start=now,
                    count=0,
                    limit=policy.limit,
                    window_seconds=policy.window_seconds
                )
                self.store.set(key, bucket)
            
            retry_after = max(1, math.ceil(bucket.window_start + bucket.window_seconds - now))
            
            if bucket.count >= bucket.limit:
                return RateLimitDecision(False, bucket.limit, 0, retry_after)
            
            bucket.count += 1
            return RateLimitDecision(True, bucket.limit, bucket.limit - bucket.count, retry_after)
    
    def check(self, client_key: str, endpoint_class: str) -> RateLimitDecision:
        """Like hit() but raises RateLimitError on breach."""
        decision = self.hit(client_key, endpoint_class)
        if not decision.allowed:
            logger.warning("Rate limit exceeded",
                           client=client_key,
                           endpoint_class=endpoint_class,
                           limit=decision.limit,
                           retry_after=decision.retry_after)
            raise RateLimitError(self.policies[endpoint_class].message, retry_after=decision.retry_after)
        return decision
    
    def sweep_stale(self) -> int:
        """Drop buckets whose window has already elapsed."""
        now = self._clock()
        return self.store.sweep(lambda _key, bucket: now - bucket.window_start >= bucket.window_seconds)
    

def is_retryable_upstream_error(exc: BaseException) -> bool:
    """429s and 5xx from Replicate are transient; everything else is final."""
    return isinstance(exc, (UpstreamRateLimitError, UpstreamTransientError))


SleepFunc = Callable[[float], Awaitable[Any]]


class BackoffPolicy:
    """Exponential backoff shared by prediction creation and polling.

    The delay before retry ``n`` (0-based) is ``base_delay * exponential_base ** n``
    capped at ``max_delay``, unless the error carries a ``retry_after`` hint,
    which is used as given.
    """
    
    def __init__(self, 
                 max_retries: Optional[int] = None, 
                 base_delay: Optional[float] = None, 
                 max_delay: Optional[float] = None,
                 exponential_base: float = 2.0,
                 classify: Callable[[BaseException], bool] = is_retryable_upstream_error):
        self.max_retries = max_retries if max_retries is not None else settings.upstream_max_retries
        self.base_delay = base_delay if base_delay is not None else settings.upstream_backoff_base_seconds
        self.max_delay = max_delay if max_delay is not None else settings.upstream_backoff_max_seconds
        self.exponential_base = exponential_base
        self.classify = classify
    
    def delay_for(self, attempt: int, error: BaseException) -> float:
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None and retry_after >= 0:
            return float(retry_after)
        return min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
    
    async def execute(self, 
                     func: Callable[..., Awaitable[Any]],
                     *args,
                     sleep: Optional[SleepFunc] = None,
                     **kwargs) -> Any:
        """Execute function with exponential backoff retry logic."""
        sleep = sleep or asyncio.sleep
        
        for attempt in range(self.max_retries + 1):
            try:
                result = await func(*args, **kwargs)
                if attempt > 0:
                    logger.info("Request succeeded after retry", attempt=attempt)
                return result
                
            except Exception as e:
                if not self.classify(e):
                    raise
                
                if attempt == self.max_retries:
                    logger.error("All retry attempts exhausted", 
                               attempts=attempt + 1, 
                               error_type=type(e).__name__,
                               final_error=str(e))
                    raise
                
                delay = self.delay_for(attempt, e)
                
                logger.warning("Request failed, retrying with backoff",
                             attempt=attempt + 1,
                             max_attempts=self.max_retries + 1,
                             delay_seconds=delay,
                             error_type=type(e).__name__,
                             error=str(e))
                
                await sleep(delay)
        
        # Unreachable: the final attempt either returns or raises
        raise RuntimeError("Backoff loop exited without a result")
