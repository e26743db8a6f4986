"""
HTTP and WebSocket front end for the combat mutator.

Key components:
- Starlette app exposing each remote function as a POST route
- Per-client rate limiting ahead of the idempotency registry
- Record and snapshot reads for clients that need to refetch
- WebSocket change feed filtered to one encounter

Routes:
- POST /functions/{name} - Invoke a remote function (Idempotency-Key,
  X-Client-Id headers)
- GET /records/{table}/{record_id} - Fetch one record
- GET /encounters/{encounter_id}/snapshot - Full encounter state
- GET /status - Server health, feed subscribers, idempotency stats
- WS /feed/{encounter_id} - Change notifications for one encounter
"""

import asyncio
import json
import logging
from dataclasses import asdict
from datetime import datetime

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from ..config import EngineConfig
from ..exceptions import CombatKeeperError, RateLimitError
from ..feed import Subscription
from .idempotency import IdempotencyRegistry
from .mutator import CombatMutator
from .rate_limit import RateLimiter
from .store import CombatStore

logger = logging.getLogger("combat-keeper.server")

ANONYMOUS_CLIENT = "anonymous"


def error_response(error: CombatKeeperError) -> JSONResponse:
    """Render a typed error as its JSON body and HTTP status."""
    headers = {}
    if isinstance(error, RateLimitError) and error.retry_after is not None:
        headers["Retry-After"] = str(max(1, round(error.retry_after)))
    return JSONResponse(error.to_dict(), status_code=error.status_code, headers=headers)


class CombatServer:
    """
    Owns the store, mutator, rate limiter and Starlette app.

    Attributes:
        config: Engine configuration
        store: Authoritative record store
        mutator: Remote function executor
        rate_limiter: Per-client quota
        start_time: Server start timestamp
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        store: CombatStore | None = None,
        mutator: CombatMutator | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store or CombatStore()
        self.mutator = mutator or CombatMutator(
            self.store,
            idempotency=IdempotencyRegistry(ttl_seconds=self.config.idempotency_ttl_seconds),
        )
        self.rate_limiter = RateLimiter(self.config.rate_limit_per_minute)
        self.start_time = datetime.now()
        self.app = self._build_app()

    def _build_app(self) -> Starlette:
        routes = [
            Route("/functions/{name}", self.post_function, methods=["POST"]),
            Route("/records/{table}/{record_id}", self.get_record, methods=["GET"]),
            Route("/encounters/{encounter_id}/snapshot", self.get_snapshot, methods=["GET"]),
            Route("/status", self.get_status, methods=["GET"]),
            WebSocketRoute("/feed/{encounter_id}", self.feed_endpoint),
        ]
        app = Starlette(debug=False, routes=routes)
        app.state.server = self
        return app

    async def post_function(self, request: Request) -> Response:
        """
        Invoke one remote function.

        Args:
            request: Starlette request object

        Returns:
            JSON response body of the function, or a structured error
        """
        name = request.path_params["name"]
        client_id = request.headers.get("X-Client-Id") or ANONYMOUS_CLIENT
        idempotency_key = request.headers.get("Idempotency-Key") or None

        try:
            self.rate_limiter.check(client_id)
        except RateLimitError as e:
            logger.warning(f"Rate limited {client_id} calling {name}")
            return error_response(e)

        try:
            payload = await request.json()
        except json.JSONDecodeError as e:
            return JSONResponse(
                {"error": "validation_error", "message": f"Invalid JSON body: {e}"},
                status_code=400,
            )

        try:
            body = await self.mutator.invoke(name, payload, idempotency_key)
        except CombatKeeperError as e:
            logger.info(f"{name} rejected for {client_id}: {e.code} {e.message}")
            return error_response(e)
        except Exception as e:
            logger.error(f"Unhandled error in {name}: {e}", exc_info=True)
            return JSONResponse(
                {"error": "internal_error", "message": "Internal server error"},
                status_code=500,
            )
        return JSONResponse(body)

    async def get_record(self, request: Request) -> Response:
        try:
            record = self.store.get(request.path_params["table"], request.path_params["record_id"])
        except CombatKeeperError as e:
            return error_response(e)
        return JSONResponse(record.model_dump(mode="json"))

    async def get_snapshot(self, request: Request) -> Response:
        try:
            snapshot = self.store.snapshot(request.path_params["encounter_id"])
        except CombatKeeperError as e:
            return error_response(e)
        return JSONResponse(snapshot)

    async def get_status(self, request: Request) -> Response:
        uptime = (datetime.now() - self.start_time).total_seconds()
        return JSONResponse({
            "status": "ok",
            "uptime_seconds": round(uptime, 1),
            "functions": self.mutator.function_names,
            "feed_subscribers": self.store.feed.subscriber_count,
            "idempotency": asdict(self.mutator.idempotency.get_stats()),
        })

    async def feed_endpoint(self, websocket: WebSocket) -> None:
        """
        Stream change notifications for one encounter.

        Incoming messages are ignored; receiving is only used to notice
        the client going away.

        Args:
            websocket: WebSocket connection
        """
        encounter_id = websocket.path_params["encounter_id"]
        await websocket.accept()
        subscription = self.store.feed.subscribe(encounter_id)
        pump = asyncio.create_task(self._pump(subscription, websocket))
        logger.info(f"Feed connected for encounter {encounter_id}")

        try:
            await websocket.send_json({"type": "connected", "encounter_id": encounter_id})
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info(f"Feed disconnected for encounter {encounter_id}")
        finally:
            pump.cancel()
            subscription.close()

    async def _pump(self, subscription: Subscription, websocket: WebSocket) -> None:
        async for notification in subscription:
            await websocket.send_json({
                "type": "change",
                "notification": notification.model_dump(mode="json"),
            })


def create_app(config: EngineConfig | None = None, store: CombatStore | None = None) -> Starlette:
    """Build the Starlette app for a fresh (or given) store."""
    return CombatServer(config=config, store=store).app
