from datetime import datetime, timezone

from sqlalchemy import Column, DateTime
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
	"""Timezone-aware UTC datetimes, also on backends that store them naive (sqlite)"""

	impl = DateTime(timezone=True)
	cache_ok = True

	def process_bind_param(self, value, dialect):
		if value is None:
			return value
		if value.tzinfo is None:
			return value.replace(tzinfo=timezone.utc)
		return value.astimezone(timezone.utc)

	def process_result_value(self, value, dialect):
		if value is None:
			return value
		if value.tzinfo is None:
			return value.replace(tzinfo=timezone.utc)
		return value.astimezone(timezone.utc)


class BaseModel:
	"""Timestamp columns shared by all tables"""

	created_at = Column(UTCDateTime, nullable=False, default=utcnow)
	updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
