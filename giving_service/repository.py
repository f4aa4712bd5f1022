"""
Settlement persistence: turns DonationRecords into confgive rows
"""
import logging
from typing import Dict, Iterable, List, Union

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from common.error_handling import PersistenceError
from common.schemas import DonationRecord, DonationRow
from .models import Donation

logger = logging.getLogger(__name__)

def _upload_to_column(upload: Union[bool, str]) -> str:
    if isinstance(upload, bool):
        return "true" if upload else "false"
    return upload

def _upload_from_column(value: str) -> Union[bool, str]:
    if value in ("true", "false"):
        return value == "true"
    return value

def to_row(record: DonationRecord) -> Donation:
    """Column mapping shared by the streaming and the import path"""
    values = dict(
        name=record.name,
        amount=record.amount,
        currency=record.currency,
        date=record.date,
        phone_number=record.phone_number,
        email=record.email,
        receipt=record.receipt,
        payment_type=record.payment_type,
        upload=_upload_to_column(record.upload),
        receipt_name=record.receipt_name,
        nationalid=record.nationalid,
        company=record.company,
        taxid=record.taxid,
        note=record.note,
        campus=record.campus,
        tp_trade_id=record.tp_trade_id,
        is_success=record.is_success,
        env=record.env,
        imported=record.imported,
        external_import_id=record.external_import_id,
    )
    # leave created_at to the server default unless the import backfills it
    if record.created_at is not None:
        values["created_at"] = record.created_at
    return Donation(**values)

def from_row(row: Donation) -> DonationRow:
    return DonationRow(
        id=row.id,
        name=row.name,
        amount=row.amount,
        currency=row.currency,
        date=row.date,
        phone_number=row.phone_number,
        email=row.email,
        receipt=row.receipt,
        payment_type=row.payment_type,
        upload=_upload_from_column(row.upload),
        receipt_name=row.receipt_name,
        nationalid=row.nationalid,
        company=row.company,
        taxid=row.taxid,
        note=row.note,
        campus=row.campus,
        tp_trade_id=row.tp_trade_id,
        is_success=row.is_success,
        env=row.env,
        imported=row.imported,
        external_import_id=row.external_import_id,
        created_at=row.created_at,
    )

class DonationRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _trade_id_exists(self, db: Session, tp_trade_id: str) -> bool:
        return db.execute(
            select(Donation.id).where(Donation.tp_trade_id == tp_trade_id)
        ).first() is not None

    def persist_one(self, record: DonationRecord) -> bool:
        """Insert one settled charge.

        Returns False when a row with the same tpTradeID already exists, which
        happens when a job attempt is repeated after its insert committed.
        """
        with self.session_factory() as db:
            try:
                db.add(to_row(record))
                db.commit()
            except IntegrityError as e:
                db.rollback()
                if record.tp_trade_id and self._trade_id_exists(db, record.tp_trade_id):
                    logger.info(f"Donation {record.tp_trade_id} already settled, skipping insert")
                    return False
                raise PersistenceError("Failed to insert donation", original_error=e) from e
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError("Failed to insert donation", original_error=e) from e

        logger.info(f"Donation {record.tp_trade_id} inserted")
        return True

    def persist_batch(self, records: Iterable[DonationRecord]) -> Dict[str, object]:
        """Insert imported rows in a single transaction, all or nothing"""
        records = list(records)
        if not records:
            return {"inserted": 0}

        inserted = 0
        with self.session_factory() as db:
            try:
                with db.begin():
                    for record in records:
                        db.add(to_row(record))
                        db.flush()
                        inserted += 1
            except SQLAlchemyError as e:
                logger.error(f"Batch insert rolled back after {inserted} of {len(records)} rows: {e}")
                return {"inserted": 0, "error": str(e.orig if getattr(e, "orig", None) else e)}

        logger.info(f"Batch insert committed {inserted} rows")
        return {"inserted": inserted}

    def list_since(self, last_row_id: int) -> List[DonationRow]:
        """Production donations above 1 with id greater than last_row_id, by id"""
        with self.session_factory() as db:
            rows = db.execute(
                select(Donation)
                .where(Donation.id > last_row_id)
                .where(Donation.env == "production")
                .where(Donation.amount > 1)
                .order_by(Donation.id)
            ).scalars().all()
            return [from_row(row) for row in rows]

    def campus_totals(self) -> List[Dict[str, object]]:
        with self.session_factory() as db:
            rows = db.execute(
                select(Donation.campus, func.count(Donation.id), func.sum(Donation.amount))
                .where(Donation.env == "production")
                .where(Donation.is_success.is_(True))
                .group_by(Donation.campus)
                .order_by(Donation.campus)
            ).all()
            return [
                {"campus": campus, "count": count, "total": int(total or 0)}
                for campus, count, total in rows
            ]
