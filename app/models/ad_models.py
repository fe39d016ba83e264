"""ADSYNC — Account, Campaign & Ad Snapshot Models.

The ``campaigns`` and ``ads`` tables mirror only the *active* slice of the
remote account. Reconciliation owns writes to them for the duration of a
sync run; pause/reactivate may flip ``Ad.effective_status`` between runs.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlmodel import SQLModel, Field, UniqueConstraint


class AdAccount(SQLModel, table=True):
    """A credential-bearing link between a client and a platform account."""

    __tablename__ = "ad_accounts"

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: str = Field(index=True, description="Owning tenant")
    platform: str = Field(default="meta", index=True)
    account_id: str = Field(index=True, description="Remote account id, without act_")
    name: str = Field(default="")
    access_token_enc: Optional[str] = Field(
        default=None, description="Fernet-encrypted platform token"
    )
    is_active: bool = Field(default=True)
    last_sync_at: Optional[datetime] = Field(default=None)
    sync_status: Optional[str] = Field(
        default=None, description="success | error | rate_limited | auth_error"
    )
    sync_error: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def act_id(self) -> str:
        raw = self.account_id
        return raw if raw.startswith("act_") else f"act_{raw}"


class Campaign(SQLModel, table=True):
    __tablename__ = "campaigns"
    __table_args__ = (
        UniqueConstraint("campaign_id", "ad_account_ref_id", name="uq_campaign_account"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    campaign_id: str = Field(index=True, description="Remote campaign id")
    name: str = Field(default="")
    objective: Optional[str] = Field(default=None)
    ad_account_ref_id: int = Field(foreign_key="ad_accounts.id", index=True)
    client_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Ad(SQLModel, table=True):
    """Local snapshot of an ad. ``ad_id`` is the remote id."""

    __tablename__ = "ads"

    ad_id: str = Field(primary_key=True)
    name: str = Field(default="")
    effective_status: str = Field(default="ACTIVE", description="ACTIVE | PAUSED | ...")
    creative_id: Optional[str] = Field(default=None)
    creative_thumb: Optional[str] = Field(default=None)
    object_story_id: Optional[str] = Field(default=None)
    campaign_id: Optional[str] = Field(default=None, index=True)
    adset_id: Optional[str] = Field(default=None)
    optimization_goal: Optional[str] = Field(default=None)
    objective: Optional[str] = Field(default=None, description="Owning campaign objective")
    ad_account_ref_id: int = Field(foreign_key="ad_accounts.id", index=True)
    client_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
