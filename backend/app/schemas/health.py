"""Process-level probe contracts (/health, /metrics, /api). Not enveloped."""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import Field

from app.schemas.common import CamelModel


class HealthResponse(CamelModel):
    status: Literal["ok", "degraded"]
    timestamp: datetime
    services: Dict[str, bool] = Field(description="Only enabled integrations are listed")
    version: str
    uptime: float = Field(description="Seconds since the process started")


class MemoryUsage(CamelModel):
    rss: int = Field(description="Peak resident set size, bytes")
    vms: Optional[int] = Field(default=None, description="Virtual memory size, bytes (Linux only)")


class CpuUsage(CamelModel):
    user: float
    system: float
    percent: float = Field(description="Average CPU use over the process lifetime")


class MetricsResponse(CamelModel):
    uptime: float
    memory: MemoryUsage
    cpu: CpuUsage
    timestamp: datetime


class ApiInfo(CamelModel):
    name: str
    version: str
    environment: str
    documentation: str
    features: List[str]
