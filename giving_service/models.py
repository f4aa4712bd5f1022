from sqlalchemy import Column, Integer, String, BigInteger, Boolean, Date, DateTime, Text, func, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class Donation(Base):
    """Append-only settlement record, one row per charge or imported row"""
    __tablename__ = "confgive"
    __table_args__ = (
        UniqueConstraint("tp_trade_id", name="uq_confgive_tp_trade_id"),
        UniqueConstraint("external_import_id", name="uq_confgive_external_import_id"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    name = Column(String(255))
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(8), nullable=False)
    date = Column(Date, nullable=False)
    phone_number = Column(String(32), nullable=False)
    email = Column(String(255), nullable=False, default="")
    receipt = Column(Boolean, nullable=False, default=False)
    payment_type = Column("paymenttype", String(64), nullable=False, default="")
    upload = Column(String(32), nullable=False, default="false")  # 'true' | 'false' | source tag
    receipt_name = Column("receiptname", String(255), nullable=False, default="")
    nationalid = Column(String(32), nullable=False, default="")
    company = Column(String(255), nullable=False, default="")
    taxid = Column(String(32), nullable=False, default="")
    note = Column(Text, nullable=False, default="")
    campus = Column(String(64), nullable=False, default="")
    tp_trade_id = Column(String(64))
    is_success = Column(Boolean, nullable=False, default=False)
    env = Column(String(16), nullable=False)
    imported = Column(Boolean, nullable=False, default=False)
    external_import_id = Column(String(64))
    created_at = Column(DateTime, nullable=False, server_default=func.now())
