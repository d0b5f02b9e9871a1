"""Test helpers shared across modules (not fixtures)."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

from sqlalchemy.pool import NullPool
from starlette.websockets import WebSocketState

from schoolsync.core.auth import create_jwt
from schoolsync.core.database import build_engine


def make_engine(db_path):
    return build_engine(
        f"sqlite+aiosqlite:///{db_path}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )


def make_ws():
    ws = AsyncMock(spec_set=["send_text", "close", "receive", "application_state", "client_state"])
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    ws.application_state = WebSocketState.CONNECTED
    ws.client_state = WebSocketState.CONNECTED
    return ws


def sent_frames(ws) -> list[dict]:
    """Decode every frame written to a mock websocket."""
    return [json.loads(call.args[0]) for call in ws.send_text.await_args_list]


def token_for(principal_id: str, role: str = "student") -> str:
    token, _ = create_jwt(principal_id, role)
    return token


def auth_header(principal_id: str, role: str = "student") -> dict[str, str]:
    return {"Authorization": f"Bearer {token_for(principal_id, role)}"}
