"""
Common Pydantic schemas shared across the application.

Contains health check and error schemas.
"""

from datetime import datetime

from pydantic import BaseModel, Field


# =============================================================================
# Health Check Schemas
# =============================================================================

class HealthResponse(BaseModel):
    """
    Health check response schema.

    Used by monitoring systems to verify service health.
    """

    status: str = Field(
        ...,
        description="Overall health status (healthy, unhealthy)"
    )
    version: str = Field(
        ...,
        description="Application version"
    )
    timestamp: datetime = Field(
        ...,
        description="Current server timestamp"
    )
    database: str = Field(
        ...,
        description="Database connection status"
    )
    environment: str = Field(
        ...,
        description="Runtime environment (development, production)"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "healthy",
                "version": "1.0.0",
                "timestamp": "2026-02-15T10:30:00Z",
                "database": "connected",
                "environment": "development"
            }
        }
    }


# =============================================================================
# Error Schemas
# =============================================================================

class ErrorResponse(BaseModel):
    """
    Error body returned by webhooks.

    ``message`` is always speakable: the voice platform may read it aloud.
    """

    error: str = Field(..., description="Machine-readable error reason")
    message: str = Field(..., min_length=1, description="Human readable message")


class WebhookAck(BaseModel):
    """Acknowledgement for lifecycle webhooks."""

    received: bool = True
