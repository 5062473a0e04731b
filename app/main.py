"""Royalty Statement Engine - Main Application."""

import logging.config

from fastapi import FastAPI

from app.api.routes import statements
from app.core.config import settings
from app.core.database import Base, engine
from app.core.logging import setup_logging
from app.core.logging_config import LOGGING_CONFIG

# Importing the models registers their tables on Base.metadata
import app.models  # noqa: F401

# Configure logging before anything else
logging.config.dictConfig(LOGGING_CONFIG)
logger = setup_logging(settings.log_level)

# Create all tables on startup
logger.info("Creating database tables...")
Base.metadata.create_all(bind=engine)
logger.info("Database tables ready")

# -- OpenAPI tag metadata for Swagger grouping --
tags_metadata = [
    {
        "name": "Health",
        "description": "Service health and readiness checks.",
    },
    {
        "name": "Statements",
        "description": (
            "Generate royalty statements in bulk for a period, track background "
            "batch jobs, look up stored statements, fetch PDF download links and "
            "resend statement emails."
        ),
    },
]


app = FastAPI(
    title="Royalty Statement Engine",
    description=(
        "## Royalty Statement API\n\n"
        "Computes periodic royalty statements for authors of a multi-tenant "
        "publishing platform: net sales per format, tiered royalty rates, "
        "advance recoupment, PDF statements and email delivery.\n\n"
        "### Per-author outcomes\n"
        "- `success` - statement persisted and PDF stored\n"
        "- `schedule_fault` - contract rate schedule missing or malformed\n"
        "- `calculation_fault` - no single active contract, or returns exceed sales\n"
        "- `duplicate` - a statement already exists for the period\n"
        "- `delivery_fault` - statement generated but the email could not be sent\n"
        "- `stage_failure` / `timeout` / `cancelled`\n\n"
        "### Quick Start\n"
        "```bash\n"
        "curl -X POST /api/v1/statements/batch \\\n"
        '  -H "X-User-Id: u-1" -H "X-User-Role: finance" \\\n'
        '  -H "Content-Type: application/json" \\\n'
        '  -d \'{"tenant_id":"...","period_start":"2025-01-01",'
        '"period_end":"2025-03-31","author_ids":[],"send_email":true}\'\n'
        "```\n"
    ),
    version="1.0.0",
    openapi_tags=tags_metadata,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.include_router(statements.router, prefix="/api/v1/statements", tags=["Statements"])

logger.info("Royalty Statement API ready - routes registered")


@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint.

    Returns a simple JSON object confirming the service is running.
    """
    return {"status": "healthy", "service": "royalty-statements"}
