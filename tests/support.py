"""
Shared builders for the test suite
"""
import os
import tempfile
from datetime import date

import fakeredis
from sqlalchemy import func, select

from common.job_queue import JobOptions, JobQueue
from common.schemas import DonationRecord
from giving_service.db import create_db_engine, create_session_factory
from giving_service.models import Base, Donation
from giving_service.repository import DonationRepository

class FakeClock:
    """Settable epoch clock for deterministic backoff tests"""
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

def make_queue(options: JobOptions = None, clock=None, name: str = "tappay-payments") -> JobQueue:
    client = fakeredis.FakeRedis(decode_responses=True)
    kwargs = {"clock": clock} if clock else {}
    return JobQueue(client, name, options or JobOptions(), **kwargs)

def make_record(**overrides) -> DonationRecord:
    data = dict(
        name="王小明",
        amount=100,
        currency="TWD",
        date=date(2024, 1, 5),
        phone_number="+886912345678",
        email="a@b.com",
        tp_trade_id="T123",
        is_success=True,
        env="production",
    )
    data.update(overrides)
    return DonationRecord(**data)

class SqliteDatabase:
    """File-backed SQLite so worker threads share one database"""
    def __init__(self, create_tables: bool = True):
        self._tmp = tempfile.TemporaryDirectory()
        self.engine = create_db_engine(f"sqlite:///{os.path.join(self._tmp.name, 'giving.db')}")
        if create_tables:
            Base.metadata.create_all(bind=self.engine)
        self.session_factory = create_session_factory(self.engine)
        self.repository = DonationRepository(self.session_factory)

    def count(self, *criteria) -> int:
        with self.session_factory() as db:
            stmt = select(func.count(Donation.id))
            if criteria:
                stmt = stmt.where(*criteria)
            return db.execute(stmt).scalar_one()

    def rows(self):
        with self.session_factory() as db:
            return db.execute(select(Donation).order_by(Donation.id)).scalars().all()

    def close(self):
        self.engine.dispose()
        self._tmp.cleanup()
