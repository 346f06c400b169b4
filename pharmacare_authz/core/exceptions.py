"""
Authorization Exception Hierarchy

Structured exception classes for the authorization core. All exceptions
include code, message, and details for audit trail and debugging.

Permission denials are NOT exceptions: they are returned as PermissionResult
objects. These classes cover evaluation and configuration failures only.

Exception Hierarchy:
    AuthzBaseError
    ├── PermissionMatrixError
    ├── ConfigurationError
    │   └── FeatureFlagPersistenceError
    └── DynamicEvaluationError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class AuthzBaseError(Exception):
    """
    Base exception for all authorization core errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
    """

    default_code: str = "AUTHZ_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class PermissionMatrixError(AuthzBaseError):
    """Permission matrix could not be loaded or failed validation."""
    default_code = "PERMISSION_MATRIX_ERROR"


class ConfigurationError(AuthzBaseError):
    """Compatibility configuration could not be loaded or is invalid."""
    default_code = "RBAC_CONFIG_ERROR"


class FeatureFlagPersistenceError(ConfigurationError):
    """Writing an rbac_* feature flag back to the store failed."""
    default_code = "FEATURE_FLAG_PERSIST_ERROR"

    def __init__(self, flag_key: str, message: Optional[str] = None, **kwargs):
        self.flag_key = flag_key
        details = kwargs.pop("details", None) or {}
        details["flag_key"] = flag_key
        super().__init__(
            message or f"Failed to persist feature flag {flag_key}",
            details=details,
            **kwargs,
        )


class DynamicEvaluationError(AuthzBaseError):
    """The role-assignment evaluator could not reach a decision."""
    default_code = "DYNAMIC_EVALUATION_ERROR"
