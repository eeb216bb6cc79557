"""
WebSocket Endpoint：街道狀態的即時推播

客戶端連上 /ws/streets/{street_id} 後，會收到這條街道所有日期的變更事件：
    {"event_type": "upsert" | "delete", "table": "...", "street_id": "...", "row": {...}}

日期過濾由客戶端的 Reconciler 負責。
"""
import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from starlette.websockets import WebSocketState

from core.change_feed import Subscription, get_change_feed

router = APIRouter(tags=["websocket"])
logger = logging.getLogger(__name__)


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async for change in subscription:
        if websocket.application_state != WebSocketState.CONNECTED:
            break
        await websocket.send_json(jsonable_encoder(change.to_dict()))


@router.websocket("/ws/streets/{street_id}")
async def street_status_feed(websocket: WebSocket, street_id: str):
    # 先訂閱再 accept，客戶端連上之後的寫入一定收得到
    subscription = get_change_feed().subscribe(street_id)
    await websocket.accept()
    sender = asyncio.create_task(_forward(websocket, subscription))
    logger.info(f"WebSocket subscribed to street {street_id}")

    try:
        # 客戶端不需要送任何東西；持續讀取只是為了偵測斷線
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"WebSocket for street {street_id} disconnected")
    finally:
        subscription.close()
        sender.cancel()
