"""Guardian portal WebSocket router.

Pushes recorded household activity (approvals, policy changes, member
changes) to open guardian dashboards instead of having them poll.
"""

import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import decode_token
from app.database import get_db
from app.models.user import User
from app.schemas.household import HouseholdRole, MemberStatus
from app.services.repository import GuardianRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/portal", tags=["Portal WebSocket"])


async def _reject(websocket: WebSocket, code: int, detail: str) -> None:
    await websocket.send_json({"type": "auth_error", "detail": detail})
    await websocket.close(code=code)


@router.websocket("/ws")
async def portal_websocket(
    websocket: WebSocket,
    db: AsyncSession = Depends(get_db),
):
    """WebSocket endpoint for the guardian portal.

    Protocol:
    1. Client connects and sends its JWT access token as the first text message
    2. Server checks that the caller is an active guardian or co-guardian
    3. On success: sends ``auth_ok`` and registers the connection
    4. Server pushes ``{"type": "activity", "event": {...}}`` messages
    5. Client may send "ping"; server replies with "pong"
    """
    await websocket.accept()
    connections = websocket.app.state.connections
    household_id = None

    try:
        token = await websocket.receive_text()
        try:
            payload = decode_token(token)
            user_id = payload.get("sub")
            if user_id is None or payload.get("type") != "access":
                await _reject(websocket, 4001, "Invalid token")
                return
            user_uuid = uuid.UUID(user_id)
        except (JWTError, ValueError):
            await _reject(websocket, 4001, "Invalid token")
            return

        result = await db.execute(select(User).where(User.id == user_uuid))
        user = result.scalar_one_or_none()
        member = None
        if user is not None and user.role == "guardian":
            member = await GuardianRepository(db).find_member_by_user(user.id, user.household_id)
        if (
            member is None
            or member.status != MemberStatus.ACTIVE
            or not HouseholdRole(member.role).can_vote
        ):
            await _reject(websocket, 4003, "Active guardian role required")
            return

        household_id = member.household_id
        await websocket.send_json({
            "type": "auth_ok",
            "member_id": str(member.id),
            "household_id": str(household_id),
        })
        await connections.connect(household_id, websocket)

        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_json({
                    "type": "pong",
                    "server_time": datetime.now(timezone.utc).isoformat(),
                })

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Guardian portal socket failed")
        try:
            await websocket.close(code=1011)
        except RuntimeError:
            logger.debug("Portal socket already closed")
    finally:
        if household_id is not None:
            await connections.disconnect(household_id, websocket)
