"""
核心業務邏輯層

這個 package 包含所有核心業務邏輯，包括：
- 狀態機：集中管理街道狀態的所有轉換
- Manager：管理每日狀態與回合的生命週期
- Round Ledger：每條街道每天的回合歷史
- Change Feed / Reconciler：commit 後推播變更、客戶端套用變更
- Batch Coordinator：一次操作多條街道
- Retry：暫時性 I/O 失敗的重試
"""
