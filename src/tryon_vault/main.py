import asyncio
import uvicorn
import structlog
from contextlib import asynccontextmanager
from tryon_vault.api.main import create_app
from tryon_vault.services.session_sweeper import SessionSweeper
from tryon_vault.config.settings import settings
from tryon_vault.config.logging import configure_logging

configure_logging()

logger = structlog.get_logger()
app = create_app()
session_sweeper = SessionSweeper(app.state.services.session_store, app.state.services.rate_limiter)


@asynccontextmanager
async def lifespan(app):
    logger.info("Starting Try-On Vault",
                degraded_encryption=app.state.services.crypto.degraded,
                max_sessions=settings.max_sessions,
                sweep_interval_seconds=session_sweeper.interval_seconds)
    
    sweeper_task = asyncio.create_task(session_sweeper.start())
    
    try:
        yield
    finally:
        logger.info("Shutting down Try-On Vault") 
        session_sweeper.stop()
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass

app.router.lifespan_context = lifespan


def main():
    uvicorn.run(
        "tryon_vault.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info"
    )


if __name__ == "__main__":
    main()
