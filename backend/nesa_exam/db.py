from __future__ import annotations
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker, declarative_base
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./app.db"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


# Best-effort lightweight migrations for development (SQLite-friendly)
def ensure_schema() -> None:
	try:
		inspector = inspect(engine)
		tables = set(inspector.get_table_names())
	except Exception:
		return
	if "auth_users" in tables:
		cols = {c["name"] for c in inspector.get_columns("auth_users")}
		with engine.begin() as conn:
			if "name" not in cols:
				conn.exec_driver_sql("ALTER TABLE auth_users ADD COLUMN name VARCHAR(256)")
			if "role" not in cols:
				conn.exec_driver_sql("ALTER TABLE auth_users ADD COLUMN role VARCHAR(32) DEFAULT 'student' NOT NULL")
	if "module_outputs" in tables:
		cols = {c["name"] for c in inspector.get_columns("module_outputs")}
		with engine.begin() as conn:
			if "subject" not in cols:
				conn.exec_driver_sql("ALTER TABLE module_outputs ADD COLUMN subject VARCHAR(128)")
			if "updated_at" not in cols:
				conn.exec_driver_sql("ALTER TABLE module_outputs ADD COLUMN updated_at DATETIME")
