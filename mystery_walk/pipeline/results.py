"""Stage results: either the model's output or a deterministic fallback.

Every generating stage returns one of the two. Fallback values come from
pure functions that do no I/O, so both paths can be tested on their own.
"""

from __future__ import annotations

from typing import Generic, Literal, TypeVar, Union

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class Generated(BaseModel, Generic[T]):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: Literal["generated"] = "generated"
    value: T

    @property
    def is_fallback(self) -> bool:
        return False


class Fallback(BaseModel, Generic[T]):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: Literal["fallback"] = "fallback"
    value: T
    reason: str

    @property
    def is_fallback(self) -> bool:
        return True


StageResult = Union[Generated[T], Fallback[T]]
