from fastapi import APIRouter, HTTPException, Request
from core.exceptions import RunInProgressError
from core.response import ok

router = APIRouter()

@router.get("/check-subscriptions")
async def check_subscriptions(request: Request):
    """Internal: run a reminder check now (same run the scheduler triggers)."""
    scheduler = request.app.state.container.scheduler
    try:
        report = await scheduler.run_now()
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ok(report.as_dict())

@router.get("/scheduler")
async def scheduler_status(request: Request):
    """Internal: counters of the in-process scheduler."""
    scheduler = request.app.state.container.scheduler
    return ok({
        "running": scheduler.running,
        "stopped": scheduler.stopped,
        "runs": scheduler.runs,
        "skipped": scheduler.skipped,
        "failed": scheduler.failed,
    })
