#!/usr/bin/env python3
"""Entry point for the Tetroyale web application."""

from __future__ import annotations

import json
import logging
import random
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

from tetroyale_config import AppConfig, configure_logging
from tetroyale_relay import ConnectionHub, Relay
from tetroyale_rooms import BATTLE, DUEL, RoomStore
from tetroyale_store import (
    CredentialStore,
    Database,
    DuplicateUsernameError,
    InvalidCredentialsError,
    ScoreStore,
    StoreError,
)

logger = logging.getLogger(__name__)

LEADERBOARD_LIMIT = 10


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class Credentials(BaseModel):
    username: str
    password: str


class ScoreSubmission(BaseModel):
    user_id: int
    score: int


def error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


# ---------------------------------------------------------------------------
# Web application
# ---------------------------------------------------------------------------


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    config = config or AppConfig.load()
    configure_logging(config.log_level)

    db = Database(config.database)
    credentials = CredentialStore(db)
    scores = ScoreStore(db)
    rooms = RoomStore(
        rng=random.Random(),
        min_battle_players=config.min_battle_players,
        max_battle_players=config.max_battle_players,
    )
    relay = Relay(rooms, ConnectionHub(), scores, config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info("Tetroyale listening on %s:%s", config.host, config.port)
        yield
        db.close()
        logger.info("Tetroyale stopped")

    app = FastAPI(title="Tetroyale", lifespan=lifespan)
    app.state.config = config
    app.state.rooms = rooms
    app.state.relay = relay
    app.state.credentials = credentials
    app.state.scores = scores

    @app.get("/")
    def index() -> JSONResponse:
        return JSONResponse({"name": "Tetroyale", "websocket": "/ws"})

    @app.post("/api/register")
    def register(body: Credentials) -> JSONResponse:
        try:
            user_id = credentials.register(body.username.strip(), body.password)
        except ValueError as e:
            return error(400, str(e))
        except DuplicateUsernameError:
            return error(400, "Username already exists")
        except StoreError as e:
            logger.error("Registration failed for '%s': %s", body.username, e)
            return error(503, "Registration is unavailable")
        return JSONResponse({"success": True, "user_id": user_id})

    @app.post("/api/login")
    def login(body: Credentials) -> JSONResponse:
        try:
            user = credentials.login(body.username.strip(), body.password)
        except InvalidCredentialsError:
            return error(401, "Invalid credentials")
        except StoreError as e:
            logger.error("Login failed for '%s': %s", body.username, e)
            return error(401, "Authentication failed")
        return JSONResponse({"success": True, "user": user.to_dict()})

    @app.post("/api/score")
    def submit_score(body: ScoreSubmission) -> JSONResponse:
        try:
            result = scores.record_score_if_higher(body.user_id, body.score)
        except StoreError as e:
            logger.error("Score save failed for user %s: %s", body.user_id, e)
            return error(503, "Score could not be saved")
        return JSONResponse(
            {
                "success": True,
                "new_high_score": result.accepted,
                "high_score": result.high_score,
            }
        )

    @app.get("/api/leaderboard")
    def leaderboard(limit: int = LEADERBOARD_LIMIT) -> JSONResponse:
        try:
            entries = scores.top_scores(max(1, min(limit, 100)))
        except StoreError as e:
            logger.error("Leaderboard query failed: %s", e)
            return error(503, "Leaderboard is unavailable")
        return JSONResponse({"success": True, "leaderboard": entries})

    @app.get("/api/config")
    def game_config() -> JSONResponse:
        return JSONResponse({"success": True, "settings": config.game_settings()})

    @app.get("/api/rooms")
    def list_rooms() -> JSONResponse:
        return JSONResponse(
            {"duel": rooms.summaries(DUEL), "battle": rooms.summaries(BATTLE)}
        )

    @app.websocket("/ws")
    async def websocket_endpoint(
        websocket: WebSocket,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> None:
        await websocket.accept()
        if not user_id:
            logger.info("Unauthenticated connection")
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                return
        conn_id = uuid.uuid4().hex
        await relay.connect(conn_id, websocket, user_id, username or "player-%s" % user_id)
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    payload = json.loads(data)
                except json.JSONDecodeError:
                    continue
                await relay.handle(conn_id, payload)
        except WebSocketDisconnect:
            pass
        finally:
            await relay.disconnect(conn_id)

    return app


def main() -> None:
    config = AppConfig.load()
    uvicorn.run(
        "tetroyale:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=False,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
