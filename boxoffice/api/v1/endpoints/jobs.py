"""
Job status endpoint
"""

from fastapi import APIRouter, Depends

from boxoffice.api.deps import get_task_queue
from boxoffice.core.exceptions import NotFoundError
from boxoffice.schemas.booking import JobStatusResponse
from boxoffice.workers.queue import TaskQueue

router = APIRouter()


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, task_queue: TaskQueue = Depends(get_task_queue)):
    info = await task_queue.job_status(job_id)
    if info is None:
        raise NotFoundError("Job", job_id)
    return JobStatusResponse(job_id=job_id, status=info["status"], result=info.get("result"))
