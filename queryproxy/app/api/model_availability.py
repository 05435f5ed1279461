"""Model availability endpoints for the model picker."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from queryproxy.app.api.chat import read_json
from queryproxy.app.api.dependencies import AvailabilityCheckerDep

router = APIRouter(prefix="/api", tags=["models"])


@router.get("/model-availability")
async def get_model_availability(checker: AvailabilityCheckerDep):
    """Which catalog models are currently serving, probed at most every few minutes."""
    if not checker.configured:
        return {"available": {}, "error": "API key not configured"}
    return await checker.check_all()


@router.post("/model-availability")
async def report_model_error(request: Request, checker: AvailabilityCheckerDep):
    """Record an error a client hit while using a model."""
    payload = await read_json(request)
    model_id = payload.get("modelId") if isinstance(payload, dict) else None
    if not model_id:
        return JSONResponse({"error": "Model ID required"}, status_code=400)

    checker.report_error(str(model_id), payload.get("error"))
    return {"success": True}
