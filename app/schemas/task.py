# =====================================
# app/schemas/task.py
# =====================================
from datetime import datetime
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.models.task import TaskStatus


class CamelModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateTaskRequest(CamelModel):
	image_url: Optional[str] = Field(None, description="Remote http(s) URL of the source image")
	image_file: Optional[str] = Field(
		None,
		description="Inline source image as a data URI: data:<mime>;base64,<data>",
	)

	@field_validator("image_url", "image_file", mode="before")
	@classmethod
	def blank_as_missing(cls, v):
		if isinstance(v, str) and not v.strip():
			return None
		return v

	@field_validator("image_url")
	@classmethod
	def validate_url(cls, v):
		if v is None:
			return v
		parsed = urlparse(v)
		if parsed.scheme not in ("http", "https") or not parsed.netloc:
			raise ValueError("Invalid URL format")
		return v

	@model_validator(mode="after")
	def exactly_one_source(self):
		if self.image_url is None and self.image_file is None:
			raise ValueError("Either imageUrl or imageFile must be provided")
		if self.image_url is not None and self.image_file is not None:
			raise ValueError("Either imageUrl or imageFile must be provided, but not both")
		return self


class TaskCreatedResponse(CamelModel):
	task_id: str
	status: TaskStatus
	price: float
	message: str = "Task created successfully. Image processing started."


class ImageResponse(CamelModel):
	resolution: str
	path: str
	md5: str
	width: Optional[int] = None
	height: Optional[int] = None
	size_bytes: Optional[int] = None
	created_at: datetime

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class TaskResponse(CamelModel):
	task_id: str
	status: TaskStatus
	price: float
	original_path: Optional[str] = None
	error: Optional[str] = None
	created_at: datetime
	updated_at: datetime
	completed_at: Optional[datetime] = None
	images: Optional[List[ImageResponse]] = None


class ErrorDetail(BaseModel):
	field: str
	message: str


class ErrorResponse(BaseModel):
	error: str = Field(..., description="Error title")
	message: str = Field(..., description="Human readable message")
	code: Optional[str] = Field(None, description="Machine readable error code")
	details: Optional[List[ErrorDetail]] = None
