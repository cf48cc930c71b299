import json
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jws, jwt
from jose.exceptions import JWSError

from veil.config import settings
from veil.core.exceptions import ComputationVerificationError

security = HTTPBearer()


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(hours=settings.jwt_expiration_hours)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict[str, Any]:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        return payload
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def get_current_caller(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """Extract the caller identity (creator or bettor) from a JWT token."""
    payload = decode_token(credentials.credentials)
    caller = payload.get("sub")
    if not caller:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    return str(caller)


class ClusterSigner:
    """Signs and verifies computation outputs for one computing cluster."""

    def __init__(self, cluster_id: str, key: str, algorithm: str = "HS256"):
        self.cluster_id = cluster_id
        self._key = key
        self._algorithm = algorithm

    @classmethod
    def from_settings(cls) -> "ClusterSigner":
        return cls(
            cluster_id=settings.cluster_id,
            key=settings.cluster_signing_key,
            algorithm=settings.cluster_signature_algorithm,
        )

    def sign(self, computation_id: int, body: dict[str, Any]) -> str:
        claims = {**body, "cluster": self.cluster_id, "computation_id": computation_id}
        return jws.sign(claims, self._key, algorithm=self._algorithm)

    def verify(self, token: str, computation_id: int) -> dict[str, Any]:
        """
        Verify a signed output against this cluster and computation id.

        Raises:
            ComputationVerificationError: bad signature, other cluster, or
                output issued for a different computation.
        """
        try:
            raw = jws.verify(token, self._key, algorithms=[self._algorithm])
        except JWSError as e:
            raise ComputationVerificationError(
                f"Signature verification failed for computation {computation_id}",
                code="mpc_verification_failed",
            ) from e

        claims = json.loads(raw)
        if claims.get("cluster") != self.cluster_id:
            raise ComputationVerificationError(
                f"Output for computation {computation_id} signed by unexpected cluster",
                code="mpc_verification_failed",
            )
        if claims.get("computation_id") != computation_id:
            raise ComputationVerificationError(
                f"Output signed for computation {claims.get('computation_id')}, expected {computation_id}",
                code="mpc_verification_failed",
            )
        return claims
