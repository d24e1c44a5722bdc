from fastapi import Request

from app.services.task_service import TaskOrchestrator, TaskQueryService


def get_orchestrator(request: Request) -> TaskOrchestrator:
	return request.app.state.orchestrator


def get_query_service(request: Request) -> TaskQueryService:
	return request.app.state.query_service
