import logging
import re
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.monitoring.metrics import request_count, request_duration, active_requests

logger = logging.getLogger(__name__)

METRICS_PATH = "/internal/metrics"


def _endpoint_label(request: Request) -> str:
	"""Full path template (/tasks/{task_id}), so task ids don't explode label cardinality"""
	path = request.url.path
	for name, value in (request.path_params or {}).items():
		value = str(value)
		if value:
			path = re.sub(rf"/{re.escape(value)}(?=/|$)", "/{" + name + "}", path, count=1)
	return path


class MonitoringMiddleware(BaseHTTPMiddleware):
	"""Track request metrics for Prometheus"""

	async def dispatch(self, request: Request, call_next):
		if request.url.path == METRICS_PATH:
			return await call_next(request)

		active_requests.inc()
		start_time = time.perf_counter()

		try:
			response = await call_next(request)

			duration = time.perf_counter() - start_time
			endpoint = _endpoint_label(request)

			request_count.labels(
				method=request.method,
				endpoint=endpoint,
				status=response.status_code
			).inc()

			request_duration.labels(
				method=request.method,
				endpoint=endpoint
			).observe(duration)

			return response

		finally:
			active_requests.dec()
