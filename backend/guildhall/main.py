"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from guildhall.api import ops
from guildhall.api.errors import install_error_handlers
from guildhall.guilds.api import router as guilds_router
from guildhall.infra import postgres
from guildhall.obs import init as obs_init
from guildhall.settings import settings

_LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	if settings.is_prod() and settings.uses_dev_secret():
		raise RuntimeError("SECRET_KEY must be configured outside development")
	if settings.guilds_storage_backend == "postgres":
		await postgres.init_pool()
	_LOG.info(
		"guildhall_started",
		extra={"backend": settings.guilds_storage_backend, "commit": settings.git_commit},
	)
	try:
		yield
	finally:
		await postgres.close_pool()


def create_app() -> FastAPI:
	app = FastAPI(title="Guildhall", lifespan=lifespan)
	install_error_handlers(app)

	allow_origins = list(settings.cors_allow_origins)
	if not allow_origins and settings.is_dev():
		allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
	if allow_origins:
		app.add_middleware(
			CORSMiddleware,
			allow_origins=allow_origins,
			allow_credentials=True,
			allow_methods=["*"],
			allow_headers=["*"],
		)

	obs_init(app)
	app.include_router(guilds_router)
	app.include_router(ops.router, tags=["ops"])
	return app


app = create_app()
