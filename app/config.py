from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dotenv import load_dotenv
load_dotenv()


class Settings(BaseSettings):
	# App
	APP_NAME: str = "Image Variant Task API"
	APP_VERSION: str = "1.0.0"
	DEBUG: bool = False
	ENVIRONMENT: str = "development" # development, staging, production
	LOG_LEVEL: str = "INFO"

	# Server
	PORT: int = 3000

	# Database
	DATABASE_URL: str = "sqlite+aiosqlite:///./data/image_tasks.db"
	DB_ECHO: bool = False

	# File system
	OUTPUT_DIR: str = "./output"
	TMP_DIR: str = "./temp"
	OUTPUT_URL_PREFIX: str = "/output"

	# Image processing
	MAX_DOWNLOAD_MB: int = 25
	ALLOWED_IMAGE_TYPES: List[str] = ["image/jpeg", "image/png", "image/webp", "image/gif"]
	TARGET_WIDTHS: List[int] = [1024, 800]
	JPEG_QUALITY: int = 85

	# Pricing
	PRICE_MIN: float = 5
	PRICE_MAX: float = 50

	# Timeouts (seconds)
	FETCH_TIMEOUT_SECONDS: float = 30.0
	PROCESSING_TIMEOUT_SECONDS: Optional[float] = 120.0
	SHUTDOWN_GRACE_SECONDS: float = 10.0

	# CORS
	CORS_ORIGINS: List[str] = ["*"]

	# Monitoring
	EXPOSE_METRICS: bool = True

	model_config = SettingsConfigDict(
		env_file=".env",
		env_file_encoding="utf-8",
		case_sensitive=True,
		extra="ignore",
	)

	@field_validator("MAX_DOWNLOAD_MB")
	@classmethod
	def validate_download_size(cls, v):
		if v < 1 or v > 100:
			raise ValueError(f"Invalid max download size: {v}MB")
		return v

	@field_validator("TARGET_WIDTHS")
	@classmethod
	def validate_widths(cls, v):
		if not v:
			raise ValueError("At least one target width is required")
		if any(w <= 0 for w in v):
			raise ValueError(f"Target widths must be positive: {v}")
		if len(set(v)) != len(v):
			raise ValueError(f"Target widths must be distinct: {v}")
		return v

	@field_validator("ALLOWED_IMAGE_TYPES")
	@classmethod
	def normalize_types(cls, v):
		return [t.strip().lower() for t in v if t.strip()]

	@model_validator(mode="after")
	def validate_price_range(self):
		if self.PRICE_MIN > self.PRICE_MAX:
			raise ValueError(f"PRICE_MIN ({self.PRICE_MIN}) must not exceed PRICE_MAX ({self.PRICE_MAX})")
		return self

	def ensure_directories(self) -> None:
		"""Create output and scratch directories if they are missing"""
		Path(self.OUTPUT_DIR).mkdir(parents=True, exist_ok=True)
		Path(self.TMP_DIR).mkdir(parents=True, exist_ok=True)


@lru_cache()
def get_settings() -> Settings:
	return Settings()

