"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vroom_messaging.api import messages, ops
from vroom_messaging.api.errors import install_error_handlers
from vroom_messaging.api.middleware_request_id import RequestIdMiddleware
from vroom_messaging.domain.messaging.sockets import MessagesNamespace
from vroom_messaging.infra import postgres
from vroom_messaging.obs import init as obs_init
from vroom_messaging.settings import settings

DEV_ORIGINS = [
	"http://localhost:3000",
	"https://localhost:3000",
	"http://127.0.0.1:3000",
	"http://localhost:5173",
	"http://127.0.0.1:5173",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
	await postgres.init_pool()
	try:
		yield
	finally:
		await postgres.close_pool()


app = FastAPI(title="Vroom Messaging", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(getattr(settings, "cors_allow_origins", []))
if not allow_origins:
	allow_origins = list(DEV_ORIGINS) if settings.is_dev() else ["https://app.vroom.example"]

# Starlette disallows wildcard '*' with allow_credentials=True. Replace '*' with explicit origins.
if "*" in allow_origins:
	allow_origins = list(DEV_ORIGINS) if settings.is_dev() else ["https://app.vroom.example"]

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
messages_namespace = MessagesNamespace()
sio.register_namespace(messages_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app, socketio_path=settings.socketio_path)
obs_init(app)

app.add_middleware(RequestIdMiddleware)

app.include_router(messages.router, tags=["messages"])
app.include_router(ops.router, tags=["ops"])
