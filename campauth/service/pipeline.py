from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar, Union

from campauth.logging import get_logger
from campauth.service.errors import ServiceError

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Fail:
    error: ServiceError


StepResult = Union[Ok[T], Fail]
Step = Callable[[T], Awaitable[StepResult]]


async def run_steps(name: str, value: T, steps: Sequence[Step]) -> StepResult:
    """Run ``steps`` in order, threading ``value`` through.

    The first :class:`Fail` short-circuits and is returned unchanged; later
    steps never run.
    """
    current: Any = value
    for step in steps:
        result = await step(current)
        if isinstance(result, Fail):
            logger.debug(
                "pipeline_short_circuit",
                pipeline=name,
                step=getattr(step, "__name__", repr(step)),
                error_code=result.error.error_code,
            )
            return result
        current = result.value
    return Ok(current)
