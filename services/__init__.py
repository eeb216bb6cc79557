"""
服務層

這個 package 包含純計算邏輯與單純的資料存取，不負責狀態轉換：
- TimeWindowService：工時區間推算（含智慧接續）
- WorkLogService：工時紀錄的寫入與刪除
- PermissionService：角色能力判斷
- HistoryService：回合歷史的輸出格式
"""
