# =====================================
# app/api/v1/tasks.py
# =====================================
import logging

from fastapi import APIRouter, Depends, status

from app.api.deps import get_orchestrator, get_query_service
from app.schemas.task import CreateTaskRequest, TaskCreatedResponse, TaskResponse, ErrorResponse
from app.services.task_service import TaskOrchestrator, TaskQueryService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
	"",
	response_model=TaskCreatedResponse,
	status_code=status.HTTP_201_CREATED,
	responses={400: {"model": ErrorResponse}},
)
async def create_task(
		request: CreateTaskRequest,
		orchestrator: TaskOrchestrator = Depends(get_orchestrator),
):
	"""
	Create an image processing task

	Exactly one of **imageUrl** or **imageFile** (a `data:<mime>;base64,<data>` URI)
	must be provided. The task is returned as `pending` right away; poll
	`GET /tasks/{taskId}` for the result.
	"""
	task = await orchestrator.create_task(image_url=request.image_url, image_file=request.image_file)
	return TaskCreatedResponse(task_id=task.task_id, status=task.status, price=task.price)


@router.get(
	"/{task_id}",
	response_model=TaskResponse,
	response_model_exclude_none=True,
	responses={404: {"model": ErrorResponse}},
)
async def get_task(
		task_id: str,
		query: TaskQueryService = Depends(get_query_service),
):
	"""Get task status, price and, once completed, its images"""
	return await query.get_task(task_id)
