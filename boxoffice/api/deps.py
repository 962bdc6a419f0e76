"""
Shared endpoint dependencies
"""

from typing import Optional
from uuid import UUID

from fastapi import Header, Request

from boxoffice.container import Container
from boxoffice.core.exceptions import AuthenticationError, ExternalServiceError
from boxoffice.workers.queue import TaskQueue


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_task_queue(request: Request) -> TaskQueue:
    task_queue = request.app.state.container.task_queue
    if task_queue is None:
        raise ExternalServiceError("task_queue", "Task queue is not configured")
    return task_queue


async def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> UUID:
    """
    Caller identity set by the upstream gateway after authentication
    """
    if not x_user_id:
        raise AuthenticationError("Missing X-User-Id header")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise AuthenticationError("Invalid X-User-Id header")
