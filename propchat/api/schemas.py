from pydantic import BaseModel


class HealthzResponse(BaseModel):
    status: str
    service: str
    env: str


class GatewayStats(BaseModel):
    connections: int
    ready_connections: int
    groups: int
    memberships: int
    tracked_pings: int


class ReadinessChecks(BaseModel):
    configuration: str
    database: str
    gateway: str


class ReadyzResponse(BaseModel):
    status: str
    checks: ReadinessChecks
    gateway: GatewayStats | None = None
