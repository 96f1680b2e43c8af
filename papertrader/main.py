import datetime as dt
import logging
import logging.config
from typing import Dict
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from papertrader.config import get_settings
from papertrader.dependencies import get_orchestrator, get_scheduler
from papertrader.routers import signals, trading

# Configure logging
def _configure_logging():
    """Configure structured logging for the application."""
    level = get_settings().log_level.upper()
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            },
            "detailed": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "level": level
            }
        },
        "root": {
            "level": "INFO",
            "handlers": ["console"]
        },
        "loggers": {
            "papertrader": {
                "level": level,
                "handlers": ["console"],
                "propagate": False
            },
            "httpx": {"level": "WARNING"},
            "yfinance": {"level": "WARNING"},
        }
    }
    logging.config.dictConfig(logging_config)

_configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Paper Trader Signal API",
    description="Social sentiment signals and priced trade proposals for paper trading",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",      # React dev server
        "http://localhost:5173",       # Vite dev server
        "http://localhost:8000",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(signals.router)
app.include_router(trading.router)


def healthcheck() -> Dict:
    """Health check with timestamp."""
    settings = get_settings()
    return {
        "status": "ok",
        "timestamp": dt.datetime.utcnow().isoformat(),
        "version": "1.0.0",
        "feed_configured": bool(settings.x_bearer_token),
        "ai_configured": bool(settings.grok_api_key),
    }


@app.on_event("startup")
async def startup():
    logger.info("Paper Trader Signal API starting up")
    settings = get_settings()
    if settings.refresh_watchlist:
        get_scheduler().start(lambda: settings.refresh_watchlist)

@app.on_event("shutdown")
async def shutdown():
    """Stop background refresh and close HTTP clients if they were ever built."""
    if get_scheduler.cache_info().currsize:
        await get_scheduler().stop()
    if get_orchestrator.cache_info().currsize:
        await get_orchestrator().aclose()
    logger.info("Paper Trader Signal API shutting down")

@app.get("/healthz")
def health_check():
    """Health check endpoint."""
    try:
        return healthcheck()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="Service unhealthy")

@app.get("/")
def root():
    """Root endpoint - service information."""
    return {
        "service": "Paper Trader Signal API",
        "version": "1.0.0",
        "description": "Social sentiment signals and priced trade proposals for paper trading",
        "endpoints": {
            "health": "/healthz",
            "resolve": "/resolve?token=ethereum",
            "sentiment": "POST /sentiment",
            "market_sentiment": "POST /market-sentiment",
            "flow": "POST /flow",
            "trade_parse": "POST /trade/parse",
            "diversify": "POST /diversify",
            "chat": "POST /chat",
            "docs": "/docs",
        }
    }
