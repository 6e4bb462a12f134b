from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from common.settings import settings

def make_engine(url: str):
    if url.startswith("sqlite"):
        # in-memory databases must share one connection across sessions
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

def make_session_factory(bind):
    return sessionmaker(bind=bind, expire_on_commit=False)

engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)
