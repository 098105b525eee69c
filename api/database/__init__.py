"""
Database module for the render API
"""
from .models import Base, LedgerEntry, RenderAttempt, RenderMode, RenderStatus, UserAccount, UserRole

__all__ = [
    "Base",
    "LedgerEntry",
    "RenderAttempt",
    "RenderMode",
    "RenderStatus",
    "UserAccount",
    "UserRole",
]
