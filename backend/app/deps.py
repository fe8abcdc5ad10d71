from fastapi import Depends, Header, HTTPException, status
from jose import JWTError
from sqlalchemy.orm import Session

from app.core.security import caller_from_claims, decode_access_token
from app.core.settings import settings
from app.db.session import SessionLocal, get_db
from app.schemas.caller import Caller
from app.services.appointments import build_gateway
from app.services.treatment_plans import TreatmentPlanService


def get_current_caller(authorization: str | None = Header(default=None)) -> Caller:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = decode_access_token(
            token, secret=settings.secret_key or "", alg=settings.jwt_alg
        )
        return caller_from_claims(payload)
    except (JWTError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_treatment_plan_service(db: Session = Depends(get_db)) -> TreatmentPlanService:
    return TreatmentPlanService(db, gateway=build_gateway(settings, SessionLocal, db))
