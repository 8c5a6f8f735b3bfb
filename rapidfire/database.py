from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from rapidfire.config import get_settings

DATABASE_URL = get_settings().database_url
IS_SQLITE = DATABASE_URL.startswith("sqlite")

# выполняются на каждом новом соединении SQLite
SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA temp_store=MEMORY",
)


def _engine_options(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    # одно соединение на процесс: REST, канал и таймеры делят его
    return {
        "connect_args": {"check_same_thread": False, "timeout": 30},
        "poolclass": StaticPool,
    }


engine = create_engine(DATABASE_URL, echo=False, **_engine_options(DATABASE_URL))


if IS_SQLITE:

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        for pragma in SQLITE_PRAGMAS:
            cursor.execute(pragma)
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Сессия базы данных на время одного запроса.

    Возвращает:
        Generator[Session, None, None]: Сессия, закрываемая после ответа
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
