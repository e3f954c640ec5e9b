"""Result envelope returned by the action layer."""

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ActionError(BaseModel):
    code: str
    message: str
    status_code: int = 500


class ActionResult(BaseModel, Generic[T]):
    """Either ``data`` or ``error`` is set, never both."""

    data: Optional[T] = None
    error: Optional[ActionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None
