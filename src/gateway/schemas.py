from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from state.models import CookieEntry, ServiceUsage, UsageDataPoint


class ServiceInfo(BaseModel):
    id: str
    display_name: str
    enabled: bool = False
    available: Optional[bool] = None
    supports_login: bool = False
    dashboard_url: Optional[str] = None
    status_page_url: Optional[str] = None


class UsageSnapshot(BaseModel):
    services: Dict[str, ServiceUsage] = Field(default_factory=dict)


class RefreshResponse(BaseModel):
    refreshed: List[str]
    services: Dict[str, ServiceUsage] = Field(default_factory=dict)


class LoginCompleteRequest(BaseModel):
    """Cookies handed back after a browser sign-in, either as a raw Cookie header or a list."""

    cookie_header: Optional[str] = None
    cookies: Optional[List[CookieEntry]] = None


class LoginCompleteResponse(BaseModel):
    service_id: str
    saved: bool = True
    cookie_names: List[str] = Field(default_factory=list)


class LogoutResponse(BaseModel):
    service_id: str
    removed: bool


class HistoryResponse(BaseModel):
    service_id: str
    since: Optional[datetime] = None
    points: List[UsageDataPoint] = Field(default_factory=list)
