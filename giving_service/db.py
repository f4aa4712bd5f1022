from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from common.settings import settings

def create_db_engine(url: str = None) -> Engine:
    url = url or settings.sqlalchemy_url
    if url.startswith("sqlite"):
        # settlement workers share the engine across threads
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)
