"""
Common Pydantic models for the Box Office API
"""
from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class HealthResponse(BaseModel):
    """
    Health check response model
    """
    status: str
    message: str
    timestamp: datetime
    version: str
    database: Optional[str] = None


class ErrorResponse(BaseModel):
    """
    Error response model
    """
    error: str
    message: str
