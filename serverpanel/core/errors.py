"""
Typed panel errors.

Every error carries a machine code, a human message, a suggested remediation
and a context dict so the HTTP layer can render an actionable response.
"""

from __future__ import annotations

from typing import Any, Optional


class PanelError(Exception):
    status_code = 500

    def __init__(
        self,
        code: str,
        message: str,
        suggested_action: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggested_action = suggested_action
        self.context = context or {}
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.suggested_action:
            data["suggested_action"] = self.suggested_action
        if self.context:
            data["context"] = self.context
        return data


class ValidationError(PanelError):
    status_code = 400


class NotFoundError(PanelError):
    status_code = 404


class ServerNotFoundError(NotFoundError):
    def __init__(self, server_id: str):
        super().__init__(
            "SERVER_NOT_FOUND",
            f"Server {server_id} not found",
            "Check the server id and try again",
            {"server_id": server_id},
        )


class ConflictError(PanelError):
    status_code = 409


class OperationError(PanelError):
    status_code = 500


def server_error(
    action: str,
    reason: str,
    server_id: Optional[str] = None,
    suggested_action: Optional[str] = None,
    error_cls: type[PanelError] = OperationError,
) -> PanelError:
    context = {"action": action, "reason": reason}
    if server_id:
        context["server_id"] = server_id
    return error_cls(
        f"SERVER_{action.upper()}_FAILED",
        f"Server {action} failed: {reason}",
        suggested_action or "Check the server logs for details",
        context,
    )


def filesystem_error(operation: str, path: str, reason: str, missing: bool = False) -> PanelError:
    if missing:
        return OperationError(
            "FILE_NOT_FOUND",
            f"File {operation} failed: {path} does not exist",
            "Reinstall the server or check the configured paths",
            {"operation": operation, "path": path, "reason": reason},
        )
    return OperationError(
        "FILE_PERMISSION_DENIED",
        f"File {operation} failed for {path}: {reason}",
        "Check file permissions and disk space",
        {"operation": operation, "path": path, "reason": reason},
    )


def config_error(operation: str, reason: str, server_id: Optional[str] = None) -> PanelError:
    context = {"operation": operation, "reason": reason}
    if server_id:
        context["server_id"] = server_id
    return ValidationError(
        f"CONFIG_{operation.upper()}_FAILED",
        f"Configuration {operation} failed: {reason}",
        "Check the configuration values and try again",
        context,
    )


def install_error(reason: str, server_id: str) -> PanelError:
    return ConflictError(
        "INSTALL_FAILED",
        f"Installation failed: {reason}",
        "Check the server directory and retry the installation",
        {"server_id": server_id, "reason": reason},
    )


def internal_error_payload() -> dict[str, Any]:
    return {"code": "INTERNAL_ERROR", "message": "Internal server error, check logs"}
