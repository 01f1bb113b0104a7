"""Repository (namespace) model."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from regmirror.db import Base


class Repository(Base):
    """A registry namespace, e.g. "library" or "ofkm"."""

    __tablename__ = "repositories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Repository(name={self.name})>"
