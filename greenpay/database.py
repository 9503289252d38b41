from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from greenpay.config import Config


def _engine_options(url):
    if url.startswith("sqlite"):
        # FastAPI sync routes run in a threadpool
        return {"connect_args": {"check_same_thread": False}}
    # Postgres/MySQL: stale pooled connections ko checkout par hi pakad lo
    return {"pool_pre_ping": True, "pool_size": Config.DB_POOL_SIZE}


engine = create_engine(Config.DATABASE_URL, echo=Config.DB_ECHO, **_engine_options(Config.DATABASE_URL))

# One session per request; every money movement commits explicitly
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency: request ke end par session band."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
