"""
GET /health, GET /status
Liveness probe and a small view of what the controller is tracking.
"""
from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.get("/status")
async def get_status(request: Request):
    controller = request.app.state.controller
    return {"status": "ok", **controller.status()}
