"""
CJ Sync Exception Classes

공급사 연동 코어의 구조화된 에러 분류 정의
"""
from typing import Optional, Dict, Any
from enum import Enum


class ErrorSeverity(Enum):
    """에러 심각도 레벨"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CJSyncError(Exception):
    """
    Base exception for all sync-core errors

    Attributes:
        message: 에러 메시지
        error_code: 에러 코드
        severity: 에러 심각도
        context: 추가 컨텍스트 정보
        recoverable: 복구 가능 여부
    """

    default_code = "CJ_SYNC_ERROR"
    default_severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: bool = False
    ):
        self.message = message
        self.error_code = error_code or self.default_code
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.recoverable = recoverable
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """에러 정보를 딕셔너리로 변환"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "context": self.context,
            "recoverable": self.recoverable
        }


class AuthError(CJSyncError):
    """
    Bad or expired supplier credentials, unrecoverable after re-login.
    """

    default_code = "AUTH_ERROR"
    default_severity = ErrorSeverity.HIGH


class RateLimitError(CJSyncError):
    """
    Upstream throttling (HTTP 429 / code 1600200).

    Attributes:
        retry_after: 공급사가 알려준 대기 시간 (초, 없으면 None)
    """

    default_code = "RATE_LIMIT"

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class SupplierTransportError(CJSyncError):
    """
    Network failure, timeout or 5xx from the supplier API.

    Attributes:
        status_code: HTTP 상태 코드 (연결 실패 시 None)
    """

    default_code = "SUPPLIER_TRANSPORT"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("recoverable", True)
        context = kwargs.pop("context", None) or {}
        context["status_code"] = status_code
        super().__init__(message, context=context, **kwargs)
        self.status_code = status_code


class SupplierAPIError(CJSyncError):
    """
    Non-success envelope that is neither auth, rate limit nor not-found.

    Attributes:
        code: 공급사 응답 코드
    """

    default_code = "SUPPLIER_API"

    def __init__(self, message: str, code: Optional[int] = None, **kwargs):
        context = kwargs.pop("context", None) or {}
        context["code"] = code
        super().__init__(message, context=context, **kwargs)
        self.code = code


class NotFoundError(CJSyncError):
    """pid/vid does not exist upstream. Expected during reconciliation."""

    default_code = "NOT_FOUND"
    default_severity = ErrorSeverity.LOW


class ValidationError(CJSyncError):
    """
    Malformed webhook payload or ambiguous reconciliation match.

    Attributes:
        field: 실패한 필드 이름
    """

    default_code = "VALIDATION_ERROR"
    default_severity = ErrorSeverity.LOW

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", None) or {}
        if field is not None:
            context["field"] = field
        super().__init__(message, context=context, **kwargs)
        self.field = field


class VariantIntegrityError(ValidationError):
    """
    Corrupted variant id discovered right before an order is built.
    """

    default_code = "VARIANT_INTEGRITY"
    default_severity = ErrorSeverity.HIGH


class PersistenceError(CJSyncError):
    """
    Repository failure. Propagated as-is, never retried by the core.

    Attributes:
        operation: 수행하려던 작업
    """

    default_code = "PERSISTENCE_ERROR"
    default_severity = ErrorSeverity.HIGH

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", None) or {}
        context["operation"] = operation
        super().__init__(message, context=context, **kwargs)
        self.operation = operation


class SyncDisabledError(CJSyncError):
    """Supplier connection or feature toggle is disabled."""

    default_code = "SYNC_DISABLED"
    default_severity = ErrorSeverity.LOW
