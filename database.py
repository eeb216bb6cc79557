from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from pydantic_settings import BaseSettings
from functools import lru_cache, wraps
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    database_url: str = "sqlite:///./street_status.db"

    # 網路讀寫的等待上限與重試策略（線性 backoff）
    io_timeout_seconds: float = 5.0
    io_retry_attempts: int = 3
    io_retry_delay_seconds: float = 0.5

    # 伺服器端的團隊工時寫入程序；關閉時只替操作者本人寫一筆
    team_work_log_procedure_enabled: bool = True

    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()


settings = get_settings()


def _connect_args(database_url: str, timeout: float) -> dict:
    """
    依資料庫種類設定連線參數

    SQLite 需要 check_same_thread=False（FastAPI 的 threadpool 會跨執行緒使用連線），
    timeout 則是等待資料庫鎖的秒數；其他資料庫使用 connect_timeout。
    """
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout}
    return {"connect_timeout": int(timeout)}


def enable_sqlite_savepoints(target_engine):
    """
    讓 pysqlite 正確支援 SAVEPOINT（begin_nested）

    pysqlite 預設會自行決定何時送出 BEGIN，導致 SAVEPOINT 行為不正確；
    改成由 SQLAlchemy 自己送 BEGIN。
    """
    @event.listens_for(target_engine, "connect")
    def _disable_pysqlite_transaction(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return target_engine


engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(settings.database_url, settings.io_timeout_seconds),
    pool_pre_ping=True
)
if settings.database_url.startswith("sqlite"):
    enable_sqlite_savepoints(engine)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    FastAPI dependency：提供 Database Session

    使用 yield 確保 session 在請求結束後會被關閉
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def transactional(func):
    """
    Transaction decorator：確保資料庫操作的原子性

    使用方式：
        @transactional
        def some_business_logic(db: Session, ...):
            record = StatusRecord(...)
            db.add(record)
            # 不需要手動 commit，decorator 會處理

    如果函式內發生異常：
        - 自動 rollback
        - 異常會被重新拋出（讓上層處理）

    注意：
        - 第一個參數必須是 db: Session
        - 不要在函式內手動 commit（decorator 會處理）
        - StatusRecord 與當前回合的 RoundEntry 必須在同一個 transaction 內寫入
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        db = None
        if args and isinstance(args[0], Session):
            db = args[0]
        elif 'db' in kwargs:
            db = kwargs['db']

        if db is None:
            raise ValueError(
                f"@transactional requires 'db: Session' as first argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        try:
            result = func(*args, **kwargs)
            db.commit()
            return result
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            db.rollback()
            raise

    return wrapper
