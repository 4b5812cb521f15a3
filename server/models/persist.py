"""Key-value persist model with optional expiration."""

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import LargeBinary, String

from constants import PERSIST_TABLE


class PersistModel(SQLModel, table=True):
    """Cross-request key/value pair.

    `data` holds the encoded value and is never interpreted by the store.
    `expires` is naive UTC; NULL or the far-future sentinel never expires.
    """

    __tablename__ = PERSIST_TABLE

    id: str = Field(sa_column=Column(String(255), primary_key=True, autoincrement=False))
    data: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    expires: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=False), nullable=True, index=True)
    )
