from __future__ import annotations
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text
from .db import Base


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	email = Column(String(256), nullable=True)
	name = Column(String(256), nullable=True)
	role = Column(String(32), default="student", nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# jti claim of the issued token
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), index=True, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ModuleOutput(Base):
	__tablename__ = "module_outputs"
	id = Column(String(64), primary_key=True)
	module = Column(String(64), index=True, nullable=False)
	subject = Column(String(128), nullable=True)
	# Label doubles as the record kind marker (exam / marked attempt / in progress)
	label = Column(String(512), nullable=True)
	input_json = Column(Text, nullable=False, default="{}")
	output_json = Column(Text, nullable=False, default="{}")
	# Null for shared records
	user_id = Column(String(128), index=True, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
