"""Idempotency service for replaying responses to retried mutating requests."""

import hashlib
import json
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from fastapi.responses import JSONResponse
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import utcnow
from ..core.config import settings
from ..core.exceptions import ProblemDetailsException
from ..models.idempotency import IdempotencyRecord

logger = logging.getLogger(__name__)

# Status held by a record while its first request is still running (HTTP 102 Processing)
IN_FLIGHT_STATUS = 102


class IdempotencyMismatchError(ProblemDetailsException):
    """Exception when idempotency key is reused with a different request body."""

    def __init__(self, idempotency_key: str, operation: str):
        super().__init__(
            status_code=422,
            title="Idempotency Key Mismatch",
            detail=f"Idempotency key '{idempotency_key}' was already used for '{operation}' with a different request body",
            type_uri="https://tripmarket.example/problems/idempotency-key-mismatch",
            extensions={"idempotency_key": idempotency_key, "operation": operation},
            code="IDEMPOTENCY_KEY_MISMATCH",
            retryable=False,
        )


class IdempotencyInProgressError(ProblemDetailsException):
    """Exception when a request arrives while an earlier one under the same key is still running."""

    def __init__(self, idempotency_key: str, operation: str):
        super().__init__(
            status_code=409,
            title="Request In Progress",
            detail=f"A request with idempotency key '{idempotency_key}' for '{operation}' is still being processed",
            type_uri="https://tripmarket.example/problems/idempotency-request-in-progress",
            extensions={"idempotency_key": idempotency_key, "operation": operation},
            headers={"Retry-After": "1"},
            code="IDEMPOTENCY_REQUEST_IN_PROGRESS",
            retryable=True,
        )


class IdempotencyService:
    """Service for handling idempotent operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def compute_request_hash(request_body: dict[str, Any]) -> str:
        """SHA-256 of the request body serialized with sorted keys."""
        normalized = json.dumps(request_body, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()

    def _scope(self, idempotency_key: str, operation: str, user_id: str) -> tuple:
        return (
            IdempotencyRecord.idempotency_key == idempotency_key,
            IdempotencyRecord.operation == operation,
            IdempotencyRecord.user_id == user_id,
        )

    async def check_idempotency(
        self,
        idempotency_key: str,
        operation: str,
        user_id: str,
        request_body: dict[str, Any],
    ) -> Optional[tuple[int, dict[str, Any]]]:
        """
        Return the stored (status_code, body) for a replayed request, or None.

        Raises:
            IdempotencyMismatchError: If the key was used with a different body
            IdempotencyInProgressError: If the first request under the key has not finished
        """
        request_hash = self.compute_request_hash(request_body)

        result = await self.db.execute(
            select(IdempotencyRecord).where(
                *self._scope(idempotency_key, operation, user_id),
                IdempotencyRecord.expires_at > utcnow(),
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            return None

        if record.request_body_hash != request_hash:
            logger.warning(
                "Idempotency key mismatch",
                extra={
                    "idempotency_key": idempotency_key,
                    "operation": operation,
                    "existing_hash": record.request_body_hash[:8],
                    "new_hash": request_hash[:8],
                }
            )
            raise IdempotencyMismatchError(idempotency_key, operation)

        if record.response_status_code == IN_FLIGHT_STATUS:
            logger.info(
                "Idempotent request still in flight",
                extra={"idempotency_key": idempotency_key, "operation": operation}
            )
            raise IdempotencyInProgressError(idempotency_key, operation)

        logger.info(
            "Returning cached idempotent response",
            extra={
                "idempotency_key": idempotency_key,
                "operation": operation,
                "status_code": record.response_status_code,
            }
        )
        return record.response_status_code, json.loads(record.response_body)

    async def reserve(
        self,
        idempotency_key: str,
        operation: str,
        user_id: str,
        request_body: dict[str, Any],
    ) -> bool:
        """
        Claim the key with a committed in-flight record before the operation runs.

        Returns False when another request already holds the key; the unique
        constraint on (key, operation, user) decides the winner.
        """
        await self.db.execute(
            delete(IdempotencyRecord).where(
                *self._scope(idempotency_key, operation, user_id),
                IdempotencyRecord.expires_at <= utcnow(),
            )
        )
        self.db.add(IdempotencyRecord(
            idempotency_key=idempotency_key,
            operation=operation,
            user_id=user_id,
            request_body_hash=self.compute_request_hash(request_body),
            response_status_code=IN_FLIGHT_STATUS,
            response_body="{}",
            expires_at=utcnow() + timedelta(seconds=settings.idempotency_lease_seconds),
        ))

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                "Idempotency key already claimed",
                extra={"idempotency_key": idempotency_key, "operation": operation}
            )
            return False
        return True

    async def release(self, idempotency_key: str, operation: str, user_id: str) -> None:
        """Drop an in-flight claim so a retry under the same key runs again."""
        await self.db.execute(
            delete(IdempotencyRecord).where(
                *self._scope(idempotency_key, operation, user_id),
                IdempotencyRecord.response_status_code == IN_FLIGHT_STATUS,
            )
        )
        await self.db.commit()

    async def store_response(
        self,
        idempotency_key: str,
        operation: str,
        user_id: str,
        request_body: dict[str, Any],
        status_code: int,
        response_body: dict[str, Any],
    ) -> None:
        """Store a response for later replay, completing an in-flight claim when one exists."""
        expires_at = utcnow() + timedelta(hours=settings.idempotency_ttl_hours)
        serialized = json.dumps(response_body, sort_keys=True, separators=(",", ":"), default=str)

        result = await self.db.execute(
            update(IdempotencyRecord)
            .where(
                *self._scope(idempotency_key, operation, user_id),
                IdempotencyRecord.response_status_code == IN_FLIGHT_STATUS,
            )
            .values(response_status_code=status_code, response_body=serialized, expires_at=expires_at)
        )
        if not result.rowcount:
            # Replace an expired record under the same key so the unique constraint holds
            await self.db.execute(
                delete(IdempotencyRecord).where(
                    *self._scope(idempotency_key, operation, user_id),
                    IdempotencyRecord.expires_at <= utcnow(),
                )
            )
            self.db.add(IdempotencyRecord(
                idempotency_key=idempotency_key,
                operation=operation,
                user_id=user_id,
                request_body_hash=self.compute_request_hash(request_body),
                response_status_code=status_code,
                response_body=serialized,
                expires_at=expires_at,
            ))

        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.info(
                "Idempotency record already exists (race condition)",
                extra={"idempotency_key": idempotency_key, "operation": operation, "error": str(e)}
            )

    async def cleanup_expired_records(self) -> int:
        """Delete expired idempotency records, including abandoned in-flight claims. Returns how many were removed."""
        result = await self.db.execute(
            delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= utcnow())
        )
        await self.db.commit()

        if result.rowcount:
            logger.info("Cleaned up expired idempotency records", extra={"deleted_count": result.rowcount})
        return result.rowcount or 0


async def handle_idempotent_operation(
    db: AsyncSession,
    operation: str,
    user_id: str,
    idempotency_key: Optional[str],
    request_body: dict[str, Any],
    operation_func: Callable[[], Awaitable[dict[str, Any]]],
    success_status: int = 200,
) -> JSONResponse:
    """
    Run ``operation_func`` at most once per (key, operation, user).

    The key is claimed with a committed in-flight record before the operation
    runs, so concurrent duplicates either replay the finished response or get
    a retryable 409. The JSON-ready dict the operation returns, or the Problem
    Details of a non-retryable failure, is stored and replayed for retries
    that carry the same key and body. Retryable failures release the claim.
    Without a key the operation simply runs.
    """
    if not idempotency_key:
        return JSONResponse(status_code=success_status, content=await operation_func())

    service = IdempotencyService(db)
    cached = await service.check_idempotency(idempotency_key, operation, user_id, request_body)
    if cached is None and not await service.reserve(idempotency_key, operation, user_id, request_body):
        cached = await service.check_idempotency(idempotency_key, operation, user_id, request_body)
        if cached is None:
            # The holder released its claim between our insert and the re-read
            raise IdempotencyInProgressError(idempotency_key, operation)

    if cached is not None:
        status_code, body = cached
        return JSONResponse(
            status_code=status_code,
            content=body,
            headers={"Idempotent-Replayed": "true"},
            media_type="application/problem+json" if status_code >= 400 else None,
        )

    try:
        body = await operation_func()
    except ProblemDetailsException as e:
        await db.rollback()
        if e.status_code < 500 and not e.retryable:
            await service.store_response(
                idempotency_key, operation, user_id, request_body, e.status_code, e.problem_details
            )
        else:
            await service.release(idempotency_key, operation, user_id)
        raise
    except Exception:
        await db.rollback()
        await service.release(idempotency_key, operation, user_id)
        raise

    await service.store_response(idempotency_key, operation, user_id, request_body, success_status, body)
    return JSONResponse(status_code=success_status, content=body)
