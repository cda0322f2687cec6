from __future__ import annotations
import logging
from datetime import datetime, timedelta
from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import ModuleOutput
from .services.store import NESA_MODULE, PROGRESS_LABEL, is_kind, kind_prefix
from .settings import settings


logger = logging.getLogger(__name__)


def purge_stale_progress(db: Session, *, days: int | None = None) -> int:
	"""Delete in-progress sessions nobody has saved for ``days`` days."""
	ttl = settings.progress_ttl_days if days is None else days
	if ttl <= 0:
		return 0
	threshold = datetime.utcnow() - timedelta(days=ttl)
	rows = db.scalars(
		select(ModuleOutput)
		.where(ModuleOutput.module == NESA_MODULE)
		.where(ModuleOutput.label.startswith(kind_prefix(PROGRESS_LABEL), autoescape=True))
		.where(ModuleOutput.updated_at < threshold)
	).all()
	stale = [row for row in rows if is_kind(row, PROGRESS_LABEL)]
	try:
		for row in stale:
			db.delete(row)
		db.commit()
	except Exception:
		db.rollback()
		raise
	if stale:
		logger.info("[nesa.cleanup] purged %d stale in-progress sessions", len(stale))
	return len(stale)
