from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter
from fastapi.responses import Response

router = APIRouter()

# Define metrics
request_count = Counter(
	'http_requests_total',
	'Total HTTP requests',
	['method', 'endpoint', 'status']
)

request_duration = Histogram(
	'http_request_duration_seconds',
	'HTTP request duration',
	['method', 'endpoint'],
	buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

active_requests = Gauge(
	'http_requests_active',
	'Number of active HTTP requests'
)

tasks_total = Counter(
	'image_tasks_total',
	'Image tasks by lifecycle event',
	['status']
)

tasks_in_flight = Gauge(
	'image_tasks_in_flight',
	'Background image tasks currently processing'
)

task_duration = Histogram(
	'image_task_duration_seconds',
	'Time from scheduling to terminal state',
	['status'],
	buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)
)

variants_written = Counter(
	'image_variants_written_total',
	'Image variants written to storage',
	['resolution']
)


@router.get("/metrics")
async def metrics():
	"""Prometheus metrics endpoint"""
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
