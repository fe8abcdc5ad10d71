from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt

from app.schemas.caller import Caller

# Claims the identity provider puts next to ``sub``.
CALLER_CLAIMS = ("role", "patient_code", "employee_code", "permissions")


def create_access_token(
    *,
    subject: str,
    secret: str,
    alg: str,
    expires_minutes: int,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    if extra:
        to_encode.update(extra)
    return jwt.encode(to_encode, secret, algorithm=alg)


def decode_access_token(token: str, *, secret: str, alg: str) -> Dict[str, Any]:
    return jwt.decode(token, secret, algorithms=[alg])


def caller_claims(caller: Caller) -> Dict[str, Any]:
    return {
        "role": caller.role.value,
        "patient_code": caller.patient_code,
        "employee_code": caller.employee_code,
        "permissions": sorted(caller.permissions),
    }


def caller_from_claims(payload: Dict[str, Any]) -> Caller:
    """Build a Caller from decoded token claims.

    Raises ``ValueError`` when ``sub`` is missing and pydantic's
    ``ValidationError`` when the role is unknown.
    """
    subject = payload.get("sub")
    if not subject:
        raise ValueError("token has no subject")
    return Caller(
        subject=str(subject),
        role=payload.get("role"),
        patient_code=payload.get("patient_code"),
        employee_code=payload.get("employee_code"),
        permissions=frozenset(payload.get("permissions") or []),
    )
