import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.settings import settings, validate_settings
from app.db.session import engine
from app.models import Base
from app.routers.treatment_plans import (
    item_router as plan_items_router,
    patient_router as patient_plans_router,
    router as treatment_plans_router,
)
from app.services.errors import TreatmentPlanError

app = FastAPI(title="Clinic Treatment Plans API", version="0.1.0")
logger = logging.getLogger("clinic_plans.startup")


@app.exception_handler(TreatmentPlanError)
async def treatment_plan_error_handler(request: Request, exc: TreatmentPlanError):
    payload = exc.as_dict()
    request_id = request.headers.get("x-request-id")
    if request_id:
        payload["request_id"] = request_id
    return JSONResponse(status_code=exc.status_code, content=payload)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = request.headers.get("x-request-id")
    logger.exception("Unhandled server error", extra={"request_id": request_id})
    payload = {"detail": "Internal server error"}
    if request_id:
        payload["request_id"] = request_id
    return JSONResponse(status_code=500, content=payload)


@app.on_event("startup")
def startup():
    validate_settings(settings)
    Base.metadata.create_all(bind=engine)
    logger.info(
        "Treatment plan service ready (readiness policy %s, appointments via %s).",
        settings.item_readiness_policy.value,
        settings.appointment_service_url or "local table",
    )


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(patient_plans_router)
app.include_router(treatment_plans_router)
app.include_router(plan_items_router)
