from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def clamp_percent(value: float) -> float:
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(100.0, float(value)))


class ServiceIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str


class RateWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    used_percent: float = 0.0
    window_minutes: Optional[int] = None
    resets_at: Optional[datetime] = None
    reset_description: Optional[str] = None

    @field_validator("used_percent", mode="before")
    @classmethod
    def clamp_used_percent(cls, v):
        return clamp_percent(float(v or 0))


class Credits(BaseModel):
    model_config = ConfigDict(frozen=True)

    balance: str = "0"
    unlimited: bool = False


class ServiceUsage(BaseModel):
    """Canonical usage record for one service, replaced wholesale on every refresh."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    display_name: str
    primary: Optional[RateWindow] = None
    secondary: Optional[RateWindow] = None
    tertiary: Optional[RateWindow] = None
    account_email: Optional[str] = None
    account_plan: Optional[str] = None
    version: Optional[str] = None
    error: Optional[str] = None
    needs_login: bool = False
    updated_at: datetime = Field(default_factory=utcnow)
    credits: Optional[Credits] = None
    dashboard_url: Optional[str] = None
    status_page_url: Optional[str] = None

    @model_validator(mode="after")
    def login_records_carry_no_windows(self) -> "ServiceUsage":
        if self.needs_login and self.primary is not None:
            raise ValueError("a needs_login record must not carry a primary window")
        return self


CredentialKind = Literal["none", "bearer_token", "cookie_set", "oauth_token"]


class CookieEntry(BaseModel):
    name: str
    value: str
    domain: str = ""
    path: str = "/"
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def expires_at_utc(cls, v):
        return as_utc(v)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())


class Credential(BaseModel):
    """Authentication material for one service.

    ``source`` names the resolution strategy that produced it and is kept for
    logging only.
    """

    model_config = ConfigDict(frozen=True)

    kind: CredentialKind = "none"
    token: Optional[str] = None
    refresh_token: Optional[str] = None
    cookies: List[CookieEntry] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    account: Optional[str] = None
    source: Optional[str] = None

    @field_validator("expires_at")
    @classmethod
    def expires_at_utc(cls, v):
        return as_utc(v)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if self.expires_at is not None and self.expires_at <= now:
            return True
        if self.kind == "cookie_set":
            return not any(not c.is_expired(now) for c in self.cookies)
        return False

    def valid_cookies(self, now: Optional[datetime] = None) -> List[CookieEntry]:
        now = now or utcnow()
        return [c for c in self.cookies if not c.is_expired(now)]

    def cookie_header(self) -> str:
        return "; ".join(f"{c.name}={c.value}" for c in self.valid_cookies())

    def auth_headers(self) -> Dict[str, str]:
        if self.kind in ("bearer_token", "oauth_token") and self.token:
            return {"Authorization": f"Bearer {self.token}"}
        if self.kind == "cookie_set":
            return {"Cookie": self.cookie_header()}
        return {}


class StoredCredential(BaseModel):
    service_id: str
    credential: Credential
    saved_at: datetime = Field(default_factory=utcnow)


class UsageDataPoint(BaseModel):
    ts: datetime = Field(default_factory=utcnow)
    service_id: str
    primary_percent: Optional[float] = None
    secondary_percent: Optional[float] = None
