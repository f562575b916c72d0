"""
Error taxonomy for the API.

Every class is an HTTPException so FastAPI renders it as {"detail": ...}
with the matching status code.
"""

from fastapi import HTTPException


class ValidationError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


class Unauthenticated(HTTPException):
    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


class InvalidCredentials(Unauthenticated):
    def __init__(self):
        super().__init__("Invalid credentials")


class Unverified(Unauthenticated):
    def __init__(self):
        super().__init__("Please verify your email first")


class Forbidden(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=403, detail=detail)


class NotFound(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=404, detail=detail)
