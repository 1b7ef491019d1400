"""
verify.py
---------
Purpose:
    Bearer token verification for candidate and recruiter routes.

Notes:
    - Tokens are issued by the exam platform's auth service (HS256, shared secret).
    - Candidate tokens carry the attempt they belong to in `attempt_id`
      (falls back to `sub`).
    - Recruiter routes require role `recruiter` or `admin`.
"""

from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings

RECRUITER_ROLES = ("recruiter", "admin")

_security = HTTPBearer(auto_error=False)


@dataclass(slots=True, frozen=True)
class CandidateSession:
    attempt_id: str
    claims: dict


@dataclass(slots=True, frozen=True)
class RecruiterSession:
    user_id: str
    role: str
    claims: dict


def verify_jwt(token: str) -> dict:
    try:
        return jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALGORITHM],
            options={"verify_exp": True},
        )
    except jwt.PyJWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(credentials: HTTPAuthorizationCredentials | None = Depends(_security)) -> dict:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return verify_jwt(credentials.credentials)


def candidate_dependency(claims: dict = Depends(auth_dependency)) -> CandidateSession:
    attempt_id = claims.get("attempt_id") or claims.get("sub")
    if not attempt_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return CandidateSession(attempt_id=str(attempt_id), claims=claims)


def recruiter_dependency(claims: dict = Depends(auth_dependency)) -> RecruiterSession:
    role = claims.get("role")
    if role not in RECRUITER_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Recruiter access required")
    return RecruiterSession(user_id=str(claims.get("sub", "")), role=role, claims=claims)
