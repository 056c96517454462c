"""Persistence service: save and load the grid through SQLAlchemy"""
import logging
from pathlib import Path
from typing import Callable, List, Optional

import yaml
from sqlalchemy.orm import Session

from atlas.core.database import SessionLocal
from atlas.models.grid import Row, SheetTab, Vertical
from atlas.models.records import RowRecord, SheetRecord, VerticalRecord

logger = logging.getLogger(__name__)


def sheet_to_record_fields(sheet: SheetTab) -> dict:
    return {
        "name": sheet.name,
        "description": sheet.description,
        "color": sheet.color,
        "columns": [c.model_dump(mode="json", exclude_none=True) for c in sheet.columns],
        "agents": [a.model_dump(mode="json", exclude_none=True) for a in sheet.agents],
        "http_requests": [h.model_dump(mode="json", exclude_none=True) for h in sheet.http_requests],
        "workflow": sheet.workflow.model_dump(mode="json") if sheet.workflow else None,
        "auto_update": sheet.auto_update,
    }


def record_to_sheet(record: SheetRecord) -> SheetTab:
    return SheetTab(
        id=record.id,
        name=record.name,
        description=record.description,
        color=record.color or "#3B82F6",
        columns=record.columns or [],
        rows=[dict(r.data or {}, id=r.id) for r in record.rows],
        agents=record.agents or [],
        http_requests=record.http_requests or [],
        workflow=record.workflow,
        auto_update=bool(record.auto_update),
    )


def load_seed_verticals(path: Path) -> List[Vertical]:
    """Read the seed workspace from a YAML file"""
    if not path.exists():
        logger.warning(f"Seed file not found: {path}")
        return []
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return [Vertical(**v) for v in data.get("verticals", [])]


class PersistenceService:
    """Service for storing verticals, sheets and rows in the database"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def load_verticals(self) -> List[Vertical]:
        """Load every vertical with its sheets and rows, in stored order"""
        db = self.session_factory()
        try:
            records = db.query(VerticalRecord).order_by(VerticalRecord.position).all()
            verticals = [
                Vertical(
                    id=record.id,
                    name=record.name,
                    color=record.color or "#3B82F6",
                    sheets=[record_to_sheet(s) for s in record.sheets],
                )
                for record in records
            ]
            logger.info(f"Loaded {len(verticals)} verticals")
            return verticals
        finally:
            db.close()

    def save_verticals(self, verticals: List[Vertical]):
        """Write the whole workspace; verticals absent from the list are deleted"""
        db = self.session_factory()
        try:
            keep_ids = [v.id for v in verticals]
            stale = db.query(VerticalRecord).filter(~VerticalRecord.id.in_(keep_ids)).all()
            for record in stale:
                db.delete(record)
            for position, vertical in enumerate(verticals):
                self._write_vertical(db, vertical, position)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def save_vertical(self, vertical: Vertical, position: int = 0):
        db = self.session_factory()
        try:
            self._write_vertical(db, vertical, position)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def save_sheet(self, vertical_id: str, sheet: SheetTab, position: int = 0):
        db = self.session_factory()
        try:
            self._write_sheet(db, vertical_id, sheet, position)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def save_row(self, sheet_id: str, row: Row, position: int = 0):
        db = self.session_factory()
        try:
            db.merge(self._row_record(sheet_id, row, position))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete_vertical(self, vertical_id: str):
        self._delete(VerticalRecord, VerticalRecord.id == vertical_id)

    def delete_sheet(self, sheet_id: str):
        self._delete(SheetRecord, SheetRecord.id == sheet_id)

    def delete_row(self, sheet_id: str, row_id: str):
        self._delete(RowRecord, (RowRecord.sheet_id == sheet_id) & (RowRecord.id == row_id))

    def _delete(self, model, criterion):
        db = self.session_factory()
        try:
            for record in db.query(model).filter(criterion).all():
                db.delete(record)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _write_vertical(self, db: Session, vertical: Vertical, position: int):
        record = db.get(VerticalRecord, vertical.id)
        if record is None:
            record = VerticalRecord(id=vertical.id)
            db.add(record)
        record.name = vertical.name
        record.color = vertical.color
        record.position = position

        keep_ids = [s.id for s in vertical.sheets]
        for sheet_record in list(record.sheets):
            if sheet_record.id not in keep_ids:
                db.delete(sheet_record)
        db.flush()

        for sheet_position, sheet in enumerate(vertical.sheets):
            self._write_sheet(db, vertical.id, sheet, sheet_position)

    def _write_sheet(self, db: Session, vertical_id: str, sheet: SheetTab, position: int):
        record = db.get(SheetRecord, sheet.id)
        if record is None:
            record = SheetRecord(id=sheet.id, vertical_id=vertical_id)
            db.add(record)
        record.vertical_id = vertical_id
        record.position = position
        for key, value in sheet_to_record_fields(sheet).items():
            setattr(record, key, value)

        row_ids = {r.get("id") for r in sheet.rows}
        db.query(RowRecord).filter(
            RowRecord.sheet_id == sheet.id, ~RowRecord.id.in_(row_ids)
        ).delete(synchronize_session=False)

        for row_position, row in enumerate(sheet.rows):
            db.merge(self._row_record(sheet.id, row, row_position))

    @staticmethod
    def _row_record(sheet_id: str, row: Row, position: int) -> RowRecord:
        data = {k: v for k, v in row.items() if k != "id"}
        return RowRecord(id=str(row["id"]), sheet_id=sheet_id, position=position, data=data)


# Global instance
_persistence_service: Optional[PersistenceService] = None


def get_persistence_service() -> PersistenceService:
    """Get or create global persistence service instance"""
    global _persistence_service
    if _persistence_service is None:
        _persistence_service = PersistenceService()
    return _persistence_service
