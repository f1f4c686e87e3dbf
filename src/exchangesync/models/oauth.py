"""OAuth credential model for the PracticePanther API."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

PROVIDER_PRACTICEPANTHER = "practicepanther"


class OAuthToken(SQLModel, table=True):
    """
    One row per issued or refreshed token grant.

    Rows are append-only: a refresh inserts a new row and flips older rows
    of the same provider to is_active=False, so the table doubles as an
    audit trail of every grant.
    """

    __tablename__ = "oauth_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(default=PROVIDER_PRACTICEPANTHER, index=True)
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: datetime
    scope: Optional[str] = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_used_at: Optional[datetime] = None
