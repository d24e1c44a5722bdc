from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request
import logging
import json
import time
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

SLOW_REQUEST_SECONDS = 1.0


class LoggingMiddleware(BaseHTTPMiddleware):
	"""One JSON log line per request"""

	async def dispatch(self, request: Request, call_next):
		start_time = time.perf_counter()

		response = await call_next(request)

		duration = time.perf_counter() - start_time

		log_dict = {
			"timestamp": datetime.now(timezone.utc).isoformat(),
			"request_id": getattr(request.state, "request_id", None),
			"method": request.method,
			"path": request.url.path,
			"client_host": request.client.host if request.client else None,
			"user_agent": request.headers.get("user-agent"),
			"status_code": response.status_code,
			"duration_seconds": round(duration, 3),
		}

		# Task ids in the path make polling traffic easy to follow
		task_id = request.path_params.get("task_id") if request.path_params else None
		if task_id:
			log_dict["task_id"] = task_id

		if response.status_code >= 500:
			logger.error(json.dumps(log_dict))
		elif response.status_code >= 400:
			logger.warning(json.dumps(log_dict))
		else:
			logger.info(json.dumps(log_dict))

		if duration > SLOW_REQUEST_SECONDS:
			logger.warning(f"Slow request detected: {request.method} {request.url.path} took {duration:.2f}s")

		return response
