# models/domain/nudge_domain.py
"""
Domain models for nudge dispatch: tokens, quota and cooldown records,
dispatch requests and their outcomes, and batch results.
"""

import math
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

SECONDS_PER_DAY = 24 * 60 * 60


def days_rounded_up(duration: timedelta) -> int:
    """Whole days, rounded up, for user-facing cooldown messages."""
    return max(0, math.ceil(duration.total_seconds() / SECONDS_PER_DAY))


class AccessToken(BaseModel):
    """Delegated Gmail access token (decrypted)."""

    value: str
    expires_at: datetime

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        """True when less than `seconds` remain before expiry."""
        now = now or datetime.now(UTC)
        return (self.expires_at - now).total_seconds() < seconds


class QuotaRecord(BaseModel):
    """Sends counted for one owner on one calendar day."""

    owner_id: str
    date_key: str
    count: int = Field(default=0, ge=0)


class QuotaStatus(BaseModel):
    used: int
    remaining: int
    limit: int
    can_send: bool
    reset_at: datetime


class CooldownRecord(BaseModel):
    """Last successful send from an owner to a target."""

    owner_id: str
    target_id: str
    target_name: str | None = None
    recipient: str | None = None
    last_sent_at: datetime
    send_count: int = 1


class CooldownStatus(BaseModel):
    allowed: bool
    retry_after: timedelta | None = None
    retry_after_days: int | None = None
    last_sent_at: datetime | None = None

    def reason(self, target_name: str) -> str | None:
        if self.allowed:
            return None
        days = self.retry_after_days or 1
        return f"You can nudge {target_name} again in {days} day{'s' if days > 1 else ''}"


class OwnerProfile(BaseModel):
    """Candidate sending the nudge."""

    model_config = ConfigDict(extra="allow")

    owner_id: str
    email: str | None = None
    display_name: str | None = None


class NudgeTarget(BaseModel):
    """Company to nudge. `email` may hold several comma-joined addresses."""

    target_id: str
    target_name: str
    email: str | None = None

    def primary_address(self) -> str | None:
        """First address when several are comma-joined."""
        if not self.email:
            return None
        first = str(self.email).split(",")[0].strip()
        return first or None


class DispatchRequest(BaseModel):
    target_id: str
    target_name: str
    recipient_address: str | None
    subject: str
    body: str
    owner: OwnerProfile


# =================================================================
# DISPATCH OUTCOMES
# =================================================================


class SkipReason(str, Enum):
    INVALID = "invalid"
    UNSUBSCRIBED = "unsubscribed"
    COOLDOWN = "cooldown"
    MISSING_ADDRESS = "missing_address"


class FailureKind(str, Enum):
    AUTH_EXPIRED = "auth_expired"
    AUTH_CANCELLED = "auth_cancelled"
    AUTH_TIMEOUT = "auth_timeout"
    AUTH_BLOCKED = "auth_blocked"
    RATE_LIMITED = "rate_limited"
    PROVIDER_ERROR = "provider_error"
    TIMEOUT = "timeout"
    QUOTA_EXCEEDED = "quota_exceeded"


class Sent(BaseModel):
    status: Literal["sent"] = "sent"
    message_id: str
    thread_id: str | None = None

    @property
    def user_message(self) -> str:
        return "Nudge sent"


class Skipped(BaseModel):
    status: Literal["skipped"] = "skipped"
    reason: SkipReason
    retry_after: timedelta | None = None
    detail: str | None = None

    @property
    def user_message(self) -> str:
        if self.detail:
            return self.detail
        return {
            SkipReason.INVALID: "Missing recipient address, subject or body",
            SkipReason.UNSUBSCRIBED: "Unsubscribed",
            SkipReason.COOLDOWN: "Cooldown active",
            SkipReason.MISSING_ADDRESS: "No email address",
        }[self.reason]


class Failed(BaseModel):
    status: Literal["failed"] = "failed"
    error: FailureKind
    message: str = ""

    @property
    def user_message(self) -> str:
        if self.message:
            return self.message
        return {
            FailureKind.AUTH_EXPIRED: "Authentication expired. Please try again.",
            FailureKind.AUTH_CANCELLED: "Sign-in was cancelled. Please try again.",
            FailureKind.AUTH_TIMEOUT: "Authentication timed out. Please try again.",
            FailureKind.AUTH_BLOCKED: "Popups are blocked. Allow popups for this site and try again.",
            FailureKind.RATE_LIMITED: "Too many Gmail requests. Please try again later.",
            FailureKind.PROVIDER_ERROR: "Gmail rejected the message.",
            FailureKind.TIMEOUT: "Gmail did not respond in time. Please try again.",
            FailureKind.QUOTA_EXCEEDED: "Daily sending limit reached.",
        }[self.error]


DispatchOutcome = Annotated[Sent | Skipped | Failed, Field(discriminator="status")]


# =================================================================
# BATCH
# =================================================================


class BatchProgress(BaseModel):
    current: int
    total: int
    target_name: str
    status: str


class BatchError(BaseModel):
    target_name: str
    error: str


class BatchResult(BaseModel):
    total: int
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[BatchError] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def attempted(self) -> int:
        return self.sent + self.failed + self.skipped

    def summary(self) -> str:
        text = f"{self.sent}/{self.total} sent, {self.failed} failed, {self.skipped} skipped"
        not_attempted = self.total - self.attempted
        if not_attempted:
            text += f", {not_attempted} not attempted"
        return text


# =================================================================
# CONSENT SIGNALS
# =================================================================


class ConsentSignal(BaseModel):
    """Event written by the consent landing step. `token` is Fernet-encrypted."""

    status: Literal["success", "error"]
    token: str | None = None
    expires_in: int | None = None
    error: str | None = None
