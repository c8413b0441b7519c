from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class StatusMarker(Base):
    __tablename__ = "status_markers"
    job_name: Mapped[str] = mapped_column(sa.String(255), primary_key=True)
    state: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
