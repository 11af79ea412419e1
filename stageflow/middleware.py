from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence

from .context import TransitionContext
from .errors import (
    StageFlowError,
    middleware_duplicate,
    middleware_failed,
    middleware_not_registered,
    middleware_unnamed,
)

NextFn = Callable[..., Awaitable[None]]
ExecuteFn = Callable[[TransitionContext, NextFn], Awaitable[None]]


@dataclass(frozen=True)
class Middleware:
    """A named link in the transition chain.

    ``execute(context, next)`` must await ``next()`` for the chain to continue;
    returning without calling it short-circuits everything after it.
    """

    name: str
    execute: ExecuteFn


class _Chain:
    """One run of the onion chain over a fixed middleware list."""

    def __init__(self, links: Sequence[Any], context: TransitionContext) -> None:
        self._links = links
        self._context = context
        self._index = 0

    async def advance(self, reset_index: Optional[int] = None) -> None:
        if reset_index is not None:
            self._index = reset_index
        if self._index >= len(self._links):
            return

        link = self._links[self._index]
        self._index += 1
        try:
            await link.execute(self._context, _Next(self, self._index))
        except StageFlowError:
            raise
        except Exception as e:
            raise middleware_failed(link.name, self._context, e) from e


class _Next:
    """The ``next`` callable handed to a middleware.

    ``position`` is the chain index right after that middleware, so
    ``await next(next.position)`` replays everything downstream of it.
    """

    __slots__ = ("_chain", "position")

    def __init__(self, chain: _Chain, position: int) -> None:
        self._chain = chain
        self.position = position

    async def __call__(self, reset_index: Optional[int] = None) -> None:
        await self._chain.advance(reset_index)


class MiddlewarePipeline:
    """Global middleware plus per-transition middleware, run as a single chain."""

    def __init__(self, middleware: Iterable[Any] = ()) -> None:
        self._middleware: List[Any] = []
        for mw in middleware:
            self.add(mw)

    def add(self, middleware: Any) -> None:
        name = getattr(middleware, "name", None)
        if not name:
            raise middleware_unnamed()
        if any(m.name == name for m in self._middleware):
            raise middleware_duplicate(name)
        self._middleware.append(middleware)

    def remove(self, name: str) -> None:
        for i, mw in enumerate(self._middleware):
            if mw.name == name:
                del self._middleware[i]
                return
        raise middleware_not_registered(name)

    def names(self) -> list[str]:
        return [m.name for m in self._middleware]

    def __len__(self) -> int:
        return len(self._middleware)

    async def run(self, context: TransitionContext, scoped: Sequence[Any] = ()) -> None:
        links = [*self._middleware, *scoped]
        if not links:
            return
        await _Chain(links, context).advance()
