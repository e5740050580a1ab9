import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, Uuid, Index
from sqlalchemy.orm import Mapped, mapped_column

from prflow.database import Base, utcnow


class Project(Base):
    """Read-only projection of the project registry; maintained elsewhere."""

    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[Optional[str]] = mapped_column(String(50), unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_projects_code", "code"),)
