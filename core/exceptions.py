"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理

分類：
- PermissionDenied：操作者角色沒有寫入權限（直接回報，不重試）
- InvalidTransition：從不相容的狀態執行操作（直接回報，不重試）
- FetchFailed / WriteFailed：暫時性 I/O 失敗（有限次數重試後才回報）
- PartialBatchFailure：批次操作中有部分街道失敗（回報成功與失敗清單，不回滾成功的部分）
"""


class StreetStatusException(Exception):
    """所有街道狀態異常的基類"""
    pass


# ============ 權限 ============

class PermissionDenied(StreetStatusException):
    """操作者沒有修改街道狀態的權限"""
    def __init__(self, actor_id, capability: str = "status:update"):
        self.actor_id = actor_id
        self.capability = capability
        super().__init__(f"Actor {actor_id} lacks capability {capability}")


# ============ 狀態轉換異常 ============

class InvalidTransition(StreetStatusException):
    """非法的狀態轉換"""
    def __init__(self, action: str, current_status, detail: str = None):
        self.action = action
        self.current_status = current_status
        message = f"Cannot {action} from status {getattr(current_status, 'value', current_status)}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InvalidTimeWindow(StreetStatusException):
    """時間區間參數不合法（例如 duration 不在 1..1439 分鐘內）"""
    pass


# ============ I/O 異常 ============

class FetchFailed(StreetStatusException):
    """讀取失敗（重試用盡）"""
    pass


class WriteFailed(StreetStatusException):
    """寫入失敗（重試用盡）"""
    pass


# ============ 批次 ============

class PartialBatchFailure(StreetStatusException):
    """批次操作部分失敗，result 內含成功與失敗的街道"""
    def __init__(self, result):
        self.result = result
        super().__init__(
            f"Batch {result.action} failed for {len(result.failed)} of "
            f"{len(result.failed) + len(result.succeeded)} streets"
        )


# ============ Work Log ============

class WorkLogNotFound(StreetStatusException):
    """工時紀錄不存在"""
    def __init__(self, work_log_id):
        self.work_log_id = work_log_id
        super().__init__(f"Work log {work_log_id} not found")
