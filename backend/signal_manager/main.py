import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from signal_manager.config import get_settings
from signal_manager.routers import rules as rules_router

settings = get_settings()

logging.basicConfig(
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
)

app = FastAPI(
    title="Signal Manager API",
    description="Program-rule evaluation for the Signal Manager surveillance workflow",
    version="0.1.0",
)

# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict to your frontend domain in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(rules_router.router)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------
@app.get("/health", tags=["Health"])
async def health_check():
    """Returns a simple health status."""
    return {"status": "ok"}
