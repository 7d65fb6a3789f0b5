from typing import Optional
from sqlmodel import SQLModel, Field


class IdempotencyRecord(SQLModel, table=True):
    __tablename__ = "idempotency_records"

    key: str = Field(primary_key=True)
    payload: Optional[str] = None  # JSON string
    created_at: float
    expires_at: float = Field(index=True)


class CheckoutSnapshot(SQLModel, table=True):
    __tablename__ = "checkout_snapshots"

    session_id: str = Field(primary_key=True)
    data: str  # CheckoutSession JSON
    updated_at: float
    expires_at: float = Field(index=True)


class ResumptionTokenRecord(SQLModel, table=True):
    __tablename__ = "resumption_tokens"

    token: str = Field(primary_key=True)
    session_id: str = Field(index=True)
    resource_id: str
    gateway: str
    return_context: Optional[str] = None  # JSON string
    created_at: float
    expires_at: float
