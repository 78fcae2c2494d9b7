"""
Pydantic schemas for GP51 health metrics.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(str, Enum):
    """Health classification of the GP51 platform."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthMetrics(BaseModel):
    """Point-in-time snapshot of the health monitor."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    is_healthy: bool = Field(..., alias="isHealthy")
    last_check: Optional[datetime] = Field(None, alias="lastCheck")
    response_time: float = Field(0.0, alias="responseTime", description="Mean latency in ms over the window")
    success_rate: float = Field(1.0, alias="successRate", ge=0, le=1)
    error_count: int = Field(0, alias="errorCount")
    total_requests: int = Field(0, alias="totalRequests")
    consecutive_failures: int = Field(0, alias="consecutiveFailures")
    window_size: int = Field(0, alias="windowSize")
    status: HealthStatus = HealthStatus.HEALTHY
    issues: List[str] = Field(default_factory=list)
