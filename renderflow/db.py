# Veritabanı motoru, tablo oluşturma ve basit migration'lar

import structlog
from sqlalchemy import event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from .config import settings
from . import models  # noqa: F401  (tabloları metadata'ya kaydeder)

logger = structlog.get_logger(__name__)

# sqlite: başka bir worker yazarken beklenecek süre (saniye)
SQLITE_LOCK_TIMEOUT = 30


def create_db_engine(url: str, echo: bool = False) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False, "timeout": SQLITE_LOCK_TIMEOUT}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # tek bağlantı, yoksa her session boş bir veritabanı görür
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _record):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute(f"PRAGMA busy_timeout={SQLITE_LOCK_TIMEOUT * 1000}")
        cur.close()

    return engine


engine = create_db_engine(settings.DATABASE_URL)


def _column_default_sql(column) -> str:
    default = column.default
    if default is None or not default.is_scalar:
        return ""
    value = default.arg
    if isinstance(value, bool):
        return f" DEFAULT {int(value)}"
    if isinstance(value, (int, float)):
        return f" DEFAULT {value}"
    if isinstance(value, str):
        return " DEFAULT '{}'".format(value.replace("'", "''"))
    return ""


def migrate(db_engine: Engine) -> list[str]:
    """
    Additive migrations: eski bir veritabanında eksik kolonları ekler.
    Kolon silme / tip değiştirme yapılmaz. Eklenen kolonları "tablo.kolon" olarak döner.
    """
    added: list[str] = []
    insp = inspect(db_engine)
    for table in SQLModel.metadata.sorted_tables:
        if not insp.has_table(table.name):
            continue
        existing = {c["name"] for c in insp.get_columns(table.name)}
        for column in table.columns:
            if column.name in existing:
                continue
            ddl_type = column.type.compile(dialect=db_engine.dialect)
            ddl = (
                f"ALTER TABLE {table.name} ADD COLUMN {column.name} {ddl_type}"
                f"{_column_default_sql(column)}"
            )
            with db_engine.begin() as conn:
                conn.execute(text(ddl))
            added.append(f"{table.name}.{column.name}")
            logger.info("schema_column_added", table=table.name, column=column.name)
    return added


def init_db(db_engine: Engine | None = None) -> None:
    db_engine = db_engine or engine
    SQLModel.metadata.create_all(db_engine)
    migrate(db_engine)
