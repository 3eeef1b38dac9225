"""
API endpoints for grade synchronization runs
"""

from fastapi import APIRouter, HTTPException, Depends, Header, Request, status
from fastapi.responses import Response
from typing import Optional
import logging

from gradesync.integrations.canvas.error_handler import AuthenticationError, RunInProgressError
from gradesync.schemas.grade_sync import (
    CancelRunResponse,
    LastRunSchema,
    RunStatusResponse,
    StartRunResponse
)
from gradesync.services.grade_sync.run_store import RunStore, scope_key_for_course
from gradesync.services.grade_sync.summary_export import SUMMARY_FILENAME
from gradesync.tasks.grade_sync_tasks import GradeSyncTaskManager

logger = logging.getLogger(__name__)
router = APIRouter()


def get_task_manager(request: Request) -> GradeSyncTaskManager:
    return request.app.state.task_manager


def get_run_store(request: Request) -> RunStore:
    return request.app.state.task_manager.store


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


@router.post("/courses/{course_id}/runs", response_model=StartRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_run(
    course_id: str,
    authorization: Optional[str] = Header(None),
    task_manager: GradeSyncTaskManager = Depends(get_task_manager)
):
    """Start, or resume, the grade update for a course"""

    scope_key = scope_key_for_course(course_id)
    try:
        resuming = await task_manager.start_run(course_id, token=bearer_token(authorization))
    except RunInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except AuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message)
    except Exception as e:
        logger.error(f"Failed to start grade sync for course {course_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to start grade sync: {str(e)}"
        )

    return StartRunResponse(
        scope_key=scope_key,
        accepted=True,
        resuming=resuming,
        message="Resuming previous grade update" if resuming else "Grade update started"
    )


@router.get("/courses/{course_id}", response_model=RunStatusResponse)
async def get_run_status(
    course_id: str,
    task_manager: GradeSyncTaskManager = Depends(get_task_manager),
    store: RunStore = Depends(get_run_store)
):
    """Current run state and the last finished run for a course"""

    scope_key = scope_key_for_course(course_id)
    try:
        state = await store.get(scope_key)
        last_run = await store.get_last_run(scope_key)
    except Exception as e:
        logger.error(f"Failed to load grade sync status for course {course_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to load grade sync status: {str(e)}"
        )

    return RunStatusResponse(
        course_id=course_id,
        scope_key=scope_key,
        active=task_manager.is_running(course_id),
        state=state,
        last_run=LastRunSchema.model_validate(last_run) if last_run else None
    )


@router.delete("/courses/{course_id}/runs", response_model=CancelRunResponse)
async def cancel_run(
    course_id: str,
    task_manager: GradeSyncTaskManager = Depends(get_task_manager)
):
    """Clear the stored run state so a fresh run can start"""

    cancelled = await task_manager.cancel(course_id)
    logger.info(f"Cancel requested for course {course_id}: cancelled={cancelled}")

    return CancelRunResponse(
        scope_key=scope_key_for_course(course_id),
        cancelled=cancelled,
        message="Update cancelled" if cancelled else "No grade update to cancel"
    )


@router.get("/courses/{course_id}/summary.csv")
async def download_summary(
    course_id: str,
    store: RunStore = Depends(get_run_store)
):
    """Retry and failure summary of the last per-record run"""

    last_run = await store.get_last_run(scope_key_for_course(course_id))
    if last_run is None or not last_run.summary_csv:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No summary available")

    return Response(
        content=last_run.summary_csv,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{SUMMARY_FILENAME}"'}
    )
