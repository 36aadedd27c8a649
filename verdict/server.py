"""FastAPI server for Verdict."""
from __future__ import annotations

import asyncio
import logging
import uuid

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse

from verdict.config import get_config
from verdict.pipeline import ModerationPipeline
from verdict.store import PersistenceError

logger = logging.getLogger(__name__)

app = FastAPI(title="Verdict")


async def _cleanup_loop(pipeline: ModerationPipeline, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            pipeline.cleanup_old_reviews()
        except Exception:
            logger.warning("Review cleanup failed", exc_info=True)


@app.on_event("startup")
async def _startup() -> None:
    config = get_config()
    app.state.config = config
    app.state.pipeline = ModerationPipeline(config)
    interval = float(config.review.get("cleanup_interval_minutes", 60)) * 60
    app.state.cleanup_task = asyncio.create_task(_cleanup_loop(app.state.pipeline, interval)) if interval > 0 else None


@app.on_event("shutdown")
async def _shutdown() -> None:
    task = getattr(app.state, "cleanup_task", None)
    if task is not None:
        task.cancel()
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.aclose()


@app.get("/health")
async def health():
    """Health check endpoint for monitoring."""
    return {"status": "healthy", "service": "verdict"}


@app.post("/api/moderation")
async def moderation_api(
    request: Request,
    image: UploadFile | None = File(None),
    uploader_id: str = Form("anonymous"),
):
    if image is None:
        return JSONResponse({"success": False, "error": "image file required"}, status_code=400)
    data = await image.read()
    if not data:
        return JSONResponse({"success": False, "error": "empty image file"}, status_code=400)
    image_id = uuid.uuid4().hex
    context = {
        "filename": image.filename or "upload",
        "content_type": image.content_type or "application/octet-stream",
        "size": len(data),
        "uploader_id": uploader_id,
    }
    pipeline: ModerationPipeline = request.app.state.pipeline
    try:
        result = await pipeline.analyze_and_persist_image(image_id, data, context)
    except PersistenceError as exc:
        logger.error("Moderation failed for %s: %s", image_id, exc)
        return JSONResponse(
            {"success": False, "image_id": image_id, "reason": "persistence_failed", "error": str(exc)},
            status_code=500,
        )
    if not result.get("success"):
        return JSONResponse(result, status_code=500)
    return result


@app.get("/api/reviews")
async def reviews_api(
    request: Request,
    priority: str | None = None,
    assigned_to: str | None = None,
    limit: int | None = None,
):
    scheduler = request.app.state.pipeline.scheduler
    items = scheduler.list_pending_reviews(priority=priority, assigned_to=assigned_to, limit=limit)
    return {"reviews": [item.to_dict() for item in items]}


@app.get("/api/reviews/stats")
async def review_stats_api(request: Request):
    return request.app.state.pipeline.scheduler.get_review_stats()


@app.post("/api/reviews/{review_id}/complete")
async def review_complete_api(review_id: str, request: Request, payload: dict | None = None):
    payload = payload or {}
    pipeline: ModerationPipeline = request.app.state.pipeline
    completed = pipeline.complete_review(
        review_id,
        action=payload.get("action"),
        notes=payload.get("notes"),
        actor=payload.get("actor"),
    )
    if not completed:
        return JSONResponse({"error": "not found"}, status_code=404)
    return {"ok": True, "review_id": review_id}


@app.post("/api/reviews/{review_id}/reassign")
async def review_reassign_api(review_id: str, request: Request, payload: dict | None = None):
    payload = payload or {}
    pipeline: ModerationPipeline = request.app.state.pipeline
    try:
        item = pipeline.reassign_review(review_id, payload.get("reviewer_id"), actor=payload.get("actor"))
    except ValueError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    if item is None:
        return JSONResponse({"error": "not found"}, status_code=404)
    return item.to_dict()


@app.post("/api/reviews/{review_id}/escalate")
async def review_escalate_api(review_id: str, request: Request, payload: dict | None = None):
    payload = payload or {}
    reason = str(payload.get("reason") or "manual escalation")
    pipeline: ModerationPipeline = request.app.state.pipeline
    item = pipeline.escalate_review(review_id, reason, actor=payload.get("actor"))
    if item is None:
        return JSONResponse({"error": "not found"}, status_code=404)
    return item.to_dict()


@app.post("/api/reviews/cleanup")
async def review_cleanup_api(request: Request, payload: dict | None = None):
    payload = payload or {}
    max_age_hours = payload.get("max_age_hours")
    pipeline: ModerationPipeline = request.app.state.pipeline
    removed = pipeline.cleanup_old_reviews(float(max_age_hours) if max_age_hours is not None else None)
    return {"ok": True, "removed": removed}


@app.get("/api/models/performance")
async def model_performance_api(request: Request):
    return {"models": request.app.state.pipeline.get_model_performance()}


@app.get("/api/models/weights")
async def model_weights_api(request: Request):
    return {"weights": request.app.state.pipeline.get_current_weights()}


@app.post("/api/feedback")
async def feedback_api(payload: dict, request: Request):
    image_id = payload.get("image_id")
    ground_truth = payload.get("ground_truth")
    correct_action = payload.get("correct_action")
    if not image_id or not ground_truth or not correct_action:
        return JSONResponse({"error": "image_id, ground_truth and correct_action required"}, status_code=400)
    pipeline: ModerationPipeline = request.app.state.pipeline
    await pipeline.drain()
    applied = pipeline.provide_feedback(str(image_id), str(ground_truth), str(correct_action))
    return {"ok": True, "applied": applied}


@app.post("/api/models/reset")
async def model_reset_api(request: Request):
    request.app.state.pipeline.reset_adaptive_learning()
    return {"ok": True}


def main():
    import uvicorn
    config = get_config()
    host = config.server.get("host", "127.0.0.1")
    port = int(config.server.get("port", 8099))
    uvicorn.run("verdict.server:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
