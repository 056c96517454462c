"""Persistence records for verticals, sheets and rows"""
from sqlalchemy import Column, String, Integer, Boolean, Text, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid

from atlas.core.database import Base


class VerticalRecord(Base):
    """Stored vertical"""
    __tablename__ = "verticals"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    color = Column(String, nullable=True)
    position = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    sheets = relationship(
        "SheetRecord",
        back_populates="vertical",
        cascade="all, delete-orphan",
        order_by="SheetRecord.position",
    )

    def __repr__(self):
        return f"<VerticalRecord(id={self.id}, name={self.name})>"


class SheetRecord(Base):
    """Stored sheet; column and enrichment definitions are kept as JSON"""
    __tablename__ = "sheets"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    vertical_id = Column(String, ForeignKey("verticals.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String, nullable=True)
    position = Column(Integer, default=0)

    columns = Column(JSON, nullable=False, default=list)
    agents = Column(JSON, nullable=False, default=list)
    http_requests = Column(JSON, nullable=False, default=list)
    workflow = Column(JSON, nullable=True)
    auto_update = Column(Boolean, default=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    vertical = relationship("VerticalRecord", back_populates="sheets")
    rows = relationship(
        "RowRecord",
        back_populates="sheet",
        cascade="all, delete-orphan",
        order_by="RowRecord.position",
    )

    def __repr__(self):
        return f"<SheetRecord(id={self.id}, name={self.name}, vertical={self.vertical_id})>"


class RowRecord(Base):
    """Stored row; the cell dict is kept as JSON"""
    __tablename__ = "rows"

    id = Column(String, primary_key=True)
    sheet_id = Column(String, ForeignKey("sheets.id", ondelete="CASCADE"), primary_key=True)
    position = Column(Integer, default=0)
    data = Column(JSON, nullable=False, default=dict)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    sheet = relationship("SheetRecord", back_populates="rows")

    def __repr__(self):
        return f"<RowRecord(id={self.id}, sheet={self.sheet_id})>"
