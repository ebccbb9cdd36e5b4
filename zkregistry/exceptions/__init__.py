"""
Exception Classes for the Registry Client

A single hierarchy so callers can catch registry errors broadly or by kind.
Store adapters raise these directly; the client annotates them with the
operation and path before they reach the caller.

Usage:
    from zkregistry.exceptions import (
        RegistryException,
        NoConnectionError,
        NodeExistsError,
        NoChildrenError,
        StoreFailureError,
    )
"""
from typing import Optional, Dict, Any


class RegistryException(Exception):
    """Base exception for all registry errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code or "INTERNAL_ERROR"
        self.details = details or {}
        super().__init__(self.message)

    def annotate(self, operation: str, path: str, **context) -> "RegistryException":
        """
        Attach the failing operation and path to this error.

        Returns self so the caller can ``raise err.annotate(...)``.
        """
        self.message = f"{operation}(path:{path}): {self.message}"
        self.args = (self.message,)
        self.details.update({"operation": operation, "path": path, **context})
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


# ============================================================================
# Connection Exceptions
# ============================================================================

class NoConnectionError(RegistryException):
    """Connection handle is absent (closed or lost)"""

    def __init__(self, message: str = "registry client connection is nil"):
        super().__init__(message, "NO_CONNECTION")


class ConnectFailedError(RegistryException):
    """Session handshake with the store failed"""

    def __init__(self, message: str, endpoints: Optional[list] = None):
        super().__init__(message, "CONNECT_FAILED", {"endpoints": endpoints or []})
        self.endpoints = endpoints or []


# ============================================================================
# Node Exceptions
# ============================================================================

class NodeExistsError(RegistryException):
    """Node already exists at create time"""

    def __init__(self, path: str):
        super().__init__(f"node {path} already exists", "NODE_EXISTS", {"node": path})
        self.node = path


class NoChildrenError(RegistryException):
    """Path has no children (or does not exist, see NoSuchPathError)"""

    def __init__(self, path: str, message: Optional[str] = None):
        super().__init__(
            message or f"path {path} has none children",
            "NO_CHILDREN",
            {"node": path}
        )
        self.node = path


class NoSuchPathError(NoChildrenError):
    """Path does not exist"""

    def __init__(self, path: str):
        super().__init__(path, f"path {path} does not exist")
        self.error_code = "NO_SUCH_PATH"


# ============================================================================
# Store Exceptions
# ============================================================================

class StoreFailureError(RegistryException):
    """Any other failure reported by the coordination store"""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, "STORE_FAILURE", details)


class NodeNotEmptyError(StoreFailureError):
    """Delete refused because the node still has children"""

    def __init__(self, path: str):
        super().__init__(f"node {path} has children", {"node": path})
        self.error_code = "NODE_NOT_EMPTY"
        self.node = path


# ============================================================================
# Configuration Exceptions
# ============================================================================

class ConfigurationException(RegistryException):
    """Configuration error"""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(message, "CONFIG_ERROR", {"key": config_key})
