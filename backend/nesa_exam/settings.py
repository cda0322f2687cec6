from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
	# Provider can be "vertex" (Vertex AI Express) or "ai_studio" (Generative Language API)
	gemini_provider: str = Field(default="ai_studio", validation_alias="GEMINI_PROVIDER")
	gemini_model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_MODEL")
	# Vertex configuration
	vertex_region: str = Field(default="us-central1", validation_alias="GEMINI_VERTEX_REGION")
	vertex_project: str | None = Field(default=None, validation_alias="GEMINI_VERTEX_PROJECT")
	# Whole exams take a while to come back
	oracle_timeout_seconds: float = Field(default=120.0, validation_alias="ORACLE_TIMEOUT_SECONDS")

	# OpenRouter fallback configuration (optional)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="x-ai/grok-4-fast:free", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="NESA Practice Exams", validation_alias="OPENROUTER_TITLE")

	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=120, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# Exam generation and marking
	max_generation_attempts: int = Field(default=3, ge=1, validation_alias="NESA_MAX_GENERATION_ATTEMPTS")
	seeded_temperature: float = Field(default=0.3, validation_alias="NESA_SEEDED_TEMPERATURE")
	unseeded_temperature: float = Field(default=0.7, validation_alias="NESA_UNSEEDED_TEMPERATURE")
	marking_temperature: float = Field(default=0.3, validation_alias="NESA_MARKING_TEMPERATURE")
	matching_partial_credit: Literal["proportional", "all_or_nothing", "oracle"] = Field(
		default="proportional", validation_alias="NESA_MATCHING_PARTIAL_CREDIT"
	)

	# Legacy admin rule: display name or e-mail local part equal to this identity.
	# Users with role "admin" are always admins regardless.
	admin_identity: str = Field(default="ezra", validation_alias="NESA_ADMIN_IDENTITY")
	admin_identity_match: bool = Field(default=True, validation_alias="NESA_ADMIN_IDENTITY_MATCH")

	# In-progress sessions untouched for this many days are purged (0 disables)
	progress_ttl_days: int = Field(default=7, ge=0, validation_alias="NESA_PROGRESS_TTL_DAYS")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# Server bind address for `python -m nesa_exam`
	api_host: str = Field(default="127.0.0.1", validation_alias="API_HOST")
	api_port: int = Field(default=8000, validation_alias="API_PORT")
	reload: bool = Field(default=False, validation_alias="API_RELOAD")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
