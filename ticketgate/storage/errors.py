from __future__ import annotations

from typing import Optional


class ConstraintViolation(Exception):
    """A user record would share a unique identifier (email, phone) with another user."""

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        self.message = message or f"{field.replace('_', ' ')} already exists"
        super().__init__(self.message)

    @property
    def detail(self) -> dict[str, str]:
        return {"field": self.field}
