# errors.py — HTTP error taxonomy
# Handlers raise these; FastAPI renders them as {"detail": ...}.

from fastapi import HTTPException


class ValidationFailed(HTTPException):
    """Missing or malformed input (400)"""

    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


class InvalidTransition(ValidationFailed):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot change status from {current} to {target}")


class AuthenticationFailed(HTTPException):
    """Bad credentials or token (401); never says which half was wrong"""

    def __init__(self, detail: str = "Invalid credentials"):
        super().__init__(
            status_code=401,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class PermissionDenied(HTTPException):
    def __init__(self, detail: str = "Insufficient permissions"):
        super().__init__(status_code=403, detail=detail)


class NotFound(HTTPException):
    """Missing and not-visible-to-you are the same response"""

    def __init__(self, resource: str = "Resource"):
        super().__init__(status_code=404, detail=f"{resource} not found")


class Conflict(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)
