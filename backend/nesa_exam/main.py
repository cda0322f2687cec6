import asyncio
import logging

from fastapi import FastAPI

from .db import Base, engine, get_db, ensure_schema
from .cleanup import purge_stale_progress
from .errors import install_error_handlers
from .settings import settings
from .routers import auth
from .routers import nesa

logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="NESA Practice Exam API")
install_error_handlers(app)
app.include_router(auth.router)
app.include_router(nesa.router)


@app.get("/info")
def root():
	return {"status": "ok", "oracle_configured": bool(settings.gemini_api_key)}


def _purge_once() -> None:
	db = next(get_db())
	try:
		purge_stale_progress(db)
	except Exception:
		logger.exception("[nesa.cleanup] purge failed")
	finally:
		db.close()


async def _cleanup_watcher():
	# Run once at startup, then daily
	while True:
		_purge_once()
		await asyncio.sleep(24 * 60 * 60)


@app.on_event("startup")
async def startup_event():
	# Initialize DB schema
	Base.metadata.create_all(bind=engine)
	# Apply lightweight dev migrations
	ensure_schema()
	asyncio.create_task(_cleanup_watcher())
