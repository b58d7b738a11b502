import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .db import Base, engine, SessionLocal
from .maintenance import run_maintenance
from .settings import settings
from .routers import health
from .routers import auth
from .routers import subjects
from .routers import assessments
from .routers import attempts
from .routers import performance
from .routers import practice
from .routers import reports

logging.basicConfig(
	level=getattr(logging, settings.log_level.upper(), logging.INFO),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _maintenance_pass() -> None:
	db = SessionLocal()
	try:
		run_maintenance(db)
	finally:
		db.close()


async def _maintenance_watcher(interval: int) -> None:
	while True:
		try:
			await asyncio.to_thread(_maintenance_pass)
		except Exception:
			logger.exception("Maintenance pass failed")
		await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
	Base.metadata.create_all(bind=engine)
	task = None
	if settings.maintenance_interval_seconds > 0:
		task = asyncio.create_task(_maintenance_watcher(settings.maintenance_interval_seconds))
	yield
	if task is not None:
		task.cancel()


app = FastAPI(title="SLO Tracker API", lifespan=lifespan)
app.add_middleware(
	CORSMiddleware,
	allow_origins=["*"],
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(subjects.router)
app.include_router(assessments.router)
app.include_router(attempts.router)
app.include_router(performance.router)
app.include_router(practice.router)
app.include_router(reports.router)


@app.get("/info")
def root():
	return {"status": "ok", "gemini_configured": bool(settings.gemini_api_key)}
