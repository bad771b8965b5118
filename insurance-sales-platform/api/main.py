"""
Insurance Sales Platform API - Main Application.

FastAPI application with CORS enabled for the operator console.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import __version__
from api.pipeline import install_pipeline
from config import configure_logging

configure_logging()

# Create FastAPI application
app = FastAPI(
    title="Insurance Sales Platform API",
    description="Sales pipeline, policy issuance, commissions and recovery workflows",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS - Allow all origins for development
# TODO: Restrict origins to the operator console domain in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_pipeline(app)


@app.get("/health", tags=["Health"])
def health_check():
    """
    Health check endpoint.

    Returns the API status and version.
    """
    return {
        "status": "healthy",
        "version": __version__,
        "service": "insurance-sales-platform-api"
    }


@app.get("/", tags=["Root"])
def root():
    """
    Root endpoint with API information.
    """
    return {
        "message": "Insurance Sales Platform API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health"
    }


# Import and include routers
from api.routers import webhooks, workflows

app.include_router(workflows.router, prefix="/api/v1", tags=["Workflows"])
app.include_router(webhooks.router, prefix="/api/v1", tags=["Webhooks"])
