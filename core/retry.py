"""
暫時性 I/O 失敗的重試工具

資料庫讀寫遇到連線中斷、逾時等暫時性錯誤時，以線性 backoff 重試固定次數；
重試用盡後轉成 FetchFailed / WriteFailed，不會無限期卡住呼叫者。

權限、狀態轉換等業務錯誤不在重試範圍內，會直接往上拋。
"""
import logging
from functools import wraps

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from database import get_settings
from core.exceptions import FetchFailed, WriteFailed

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, TimeoutError, ConnectionError)


def _session_of(args, kwargs):
    db = args[0] if args else kwargs.get("db")
    return db if isinstance(db, Session) else None


def _rollback_session(retry_state) -> None:
    """
    重試前先 rollback

    連線中斷後 session 會停在 invalid transaction，不 rollback 的話
    下一次嘗試只會得到 PendingRollbackError
    """
    db = _session_of(retry_state.args, retry_state.kwargs)
    if db is not None:
        db.rollback()


def _retrying() -> Retrying:
    settings = get_settings()
    log_retry = before_sleep_log(logger, logging.WARNING)

    def before_sleep(retry_state):
        _rollback_session(retry_state)
        log_retry(retry_state)

    return Retrying(
        stop=stop_after_attempt(max(1, settings.io_retry_attempts)),
        # 第 n 次重試前等待 n * delay 秒
        wait=wait_incrementing(
            start=settings.io_retry_delay_seconds,
            increment=settings.io_retry_delay_seconds
        ),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        before_sleep=before_sleep,
        reraise=True,
    )


def _with_retry(error_cls):
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return _retrying()(func, *args, **kwargs)
            except TRANSIENT_ERRORS as e:
                db = _session_of(args, kwargs)
                if db is not None:
                    db.rollback()
                logger.error(f"{func.__name__} gave up after retries: {e}")
                raise error_cls(f"{func.__name__} failed: {e}") from e

        return wrapper

    return decorator


def retry_read(func):
    """
    讀取操作的重試 decorator，用盡後拋出 FetchFailed

    注意：必須包在 @transactional 外層，讓每次重試都從乾淨的 transaction 開始
    """
    return _with_retry(FetchFailed)(func)


def retry_write(func):
    """寫入操作的重試 decorator，用盡後拋出 WriteFailed"""
    return _with_retry(WriteFailed)(func)
