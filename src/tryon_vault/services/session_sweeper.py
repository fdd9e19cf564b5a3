import asyncio
from datetime import datetime
from typing import Optional
from tryon_vault.config.settings import settings
from tryon_vault.config.logging import get_logger
from tryon_vault.services.session_store import SessionStore
from tryon_vault.utils.rate_limiter import RateLimiter

logger = get_logger("sweeper")


class SessionSweeper:
    """Background loop that evicts expired sessions on a fixed interval."""

    def __init__(self, session_store: SessionStore,
                 rate_limiter: Optional[RateLimiter] = None,
                 interval_seconds: Optional[float] = None):
        self.session_store = session_store
        self.rate_limiter = rate_limiter
        self.interval_seconds = interval_seconds or settings.session_cleanup_interval_seconds
        self.running = False
        self.current_cycle = 0
    
    def sweep_once(self) -> int:
        self.current_cycle += 1
        cycle_start_time = datetime.now()
        
        cleaned = self.session_store.cleanup_expired()
        stale_buckets = self.rate_limiter.sweep_stale() if self.rate_limiter else 0
        
        cycle_duration = (datetime.now() - cycle_start_time).total_seconds()
        logger.info("Session sweep completed", 
                   cycle=self.current_cycle,
                   expired_sessions=cleaned,
                   stale_rate_buckets=stale_buckets,
                   remaining_sessions=len(self.session_store.store),
                   duration_seconds=round(cycle_duration, 4))
        return cleaned
    
    async def start(self):
        self.running = True
        logger.info("Starting session sweeper", interval=self.interval_seconds)
        
        while self.running:
            # First sweep happens one interval after startup
            await asyncio.sleep(self.interval_seconds)
            if not self.running:
                break
            
            try:
                self.sweep_once()
            except Exception as e:
                logger.error("Error during session sweep", cycle=self.current_cycle, error=str(e))
    
    def stop(self):
        self.running = False
        logger.info("Stopping session sweeper")
