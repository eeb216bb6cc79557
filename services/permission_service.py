"""
權限服務：角色 → 能力對照

角色與權限的儲存由外部系統負責，這裡只根據 users.role 判斷操作者能不能寫入。
"""
from sqlalchemy.orm import Session

from models import User, UserRole
from core.exceptions import PermissionDenied


STATUS_VIEW = "status:view"
STATUS_UPDATE = "status:update"
WORKLOGS_VIEW_OWN = "worklogs:view_own"
WORKLOGS_VIEW_ALL = "worklogs:view_all"
WORKLOGS_CREATE = "worklogs:create"
WORKLOGS_CREATE_ALL = "worklogs:create_all"
WORKLOGS_DELETE_OWN = "worklogs:delete_own"
WORKLOGS_DELETE_ALL = "worklogs:delete_all"

ROLE_CAPABILITIES = {
    UserRole.ADMIN: frozenset({
        STATUS_VIEW, STATUS_UPDATE,
        WORKLOGS_VIEW_OWN, WORKLOGS_VIEW_ALL, WORKLOGS_CREATE, WORKLOGS_CREATE_ALL,
        WORKLOGS_DELETE_OWN, WORKLOGS_DELETE_ALL,
    }),
    UserRole.WORKER: frozenset({
        STATUS_VIEW, STATUS_UPDATE,
        WORKLOGS_VIEW_OWN, WORKLOGS_CREATE, WORKLOGS_DELETE_OWN,
    }),
    # 訪客只能看
    UserRole.GUEST: frozenset({STATUS_VIEW}),
}


def has_capability(role: UserRole, capability: str) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


def ensure_capability(db: Session, actor_id: str, capability: str = STATUS_UPDATE) -> User:
    """
    確認操作者擁有指定能力

    參數：
        db: SQLAlchemy Session
        actor_id: 操作者 ID
        capability: 需要的能力（預設 status:update）

    返回：
        操作者的 User

    異常：
        PermissionDenied: 找不到操作者，或角色沒有此能力
    """
    actor = db.query(User).filter(User.id == actor_id).first()
    if actor is None or not has_capability(actor.role, capability):
        raise PermissionDenied(actor_id, capability)
    return actor
