import os
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from .config import settings


class Base(DeclarativeBase):
    """SQLAlchemy Declarative Base."""

    pass


def _connect_args(url: str):
    # For SQLite, disable same-thread check
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


def make_engine(url: str):
    kwargs = dict(
        connect_args=_connect_args(url),
        pool_pre_ping=True,
        future=True,
        echo=False,
    )
    # Pool sizing follows the job worker pool so per-user fan-out never starves
    if not url.startswith("sqlite"):
        kwargs.update(
            dict(
                pool_recycle=1800,  # recycle idle connections (~30m)
                pool_size=max(settings.WORKER_POOL_SIZE, 1),
                max_overflow=settings.WORKER_POOL_SIZE,
            )
        )
    if url.startswith("sqlite") and ":memory:" in url:
        # Share the same in-memory DB across connections (tests, CLI dry runs)
        kwargs["poolclass"] = StaticPool  # type: ignore[assignment]
    eng = create_engine(url, **kwargs)

    if url.startswith("sqlite") and ":memory:" not in url:

        @event.listens_for(eng, "connect")
        def _sqlite_pragma(dbapi_conn, _):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.close()

    return eng


_url = os.getenv("DATABASE_URL") or settings.DATABASE_URL
if _url.startswith("sqlite:///./"):
    # file-backed SQLite: make sure the parent directory exists
    os.makedirs(os.path.dirname(_url.replace("sqlite:///", "", 1)) or ".", exist_ok=True)

engine = make_engine(_url)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db(bind=None) -> None:
    """Create tables directly (tests / CLI); production uses Alembic."""
    import subsentry.orm_models  # noqa: F401  # register tables with Base

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
