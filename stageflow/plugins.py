"""Plugin registry, dependency ordering and hook dispatch."""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .awaitables import call_maybe_async
from .errors import (
    PluginError,
    plugin_cycle,
    plugin_dependency_missing,
    plugin_duplicate,
    plugin_has_dependents,
    plugin_hook_failed,
    plugin_not_installed,
    plugin_operation_failed,
    plugin_unnamed,
)
from .logger import get_logger

HOOK_NAMES = ("before_transition", "after_transition", "on_stage_enter", "on_stage_exit")


class Plugin:
    """Base class for plugins.

    Subclasses set ``name`` (and optionally ``version``, ``dependencies`` and an
    initial ``state``), override ``install``/``uninstall`` and define any of
    the hook methods listed in ``HOOK_NAMES``. Any object exposing the same
    attributes works too; a ``hooks`` mapping of hook name to callable is also
    accepted.
    """

    name: str = ""
    version: Optional[str] = None
    dependencies: Sequence[str] = ()
    state: Optional[Dict[str, Any]] = None

    async def install(self, engine: Any) -> None:
        pass

    async def uninstall(self, engine: Any) -> None:
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


def dependencies_of(plugin: Any) -> List[str]:
    return list(getattr(plugin, "dependencies", None) or ())


def get_hook(plugin: Any, hook_name: str) -> Optional[Callable[..., Any]]:
    hooks = getattr(plugin, "hooks", None)
    if isinstance(hooks, Mapping) and hooks.get(hook_name) is not None:
        return hooks[hook_name]
    hook = getattr(plugin, hook_name, None)
    return hook if callable(hook) else None


def topological_order(graph: Mapping[str, Iterable[str]]) -> List[str]:
    """Order ``graph`` (name -> dependency names) so dependencies come first.

    Depth-first with an explicit stack; a dependency found in the ``visiting``
    set is a back-edge and raises ``PluginError``. Names missing from the
    graph are ignored. Ties keep the graph's insertion order.
    """
    order: List[str] = []
    visited: Set[str] = set()
    visiting: Set[str] = set()

    for root in graph:
        if root in visited:
            continue
        visiting.add(root)
        stack = [(root, iter(graph[root]))]

        while stack:
            name, pending = stack[-1]
            for dep in pending:
                if dep not in graph or dep in visited:
                    continue
                if dep in visiting:
                    path = [n for n, _ in stack]
                    raise plugin_cycle(dep, path[path.index(dep):] + [dep])
                visiting.add(dep)
                stack.append((dep, iter(graph[dep])))
                break
            else:
                stack.pop()
                visiting.discard(name)
                visited.add(name)
                order.append(name)

    return order


class PluginHost:
    """Owns registered plugins, their state and the order hooks run in.

    A plugin is *registered* once it passes validation and *installed* once
    its ``install(engine)`` has run, which only happens while the engine is
    started. ``uninstall_all`` (engine stop) keeps registrations so the next
    start installs them again.
    """

    def __init__(
        self,
        owner: Any,
        *,
        is_running: Callable[[], bool],
        logger: Any = None,
    ) -> None:
        self._owner = owner
        self._is_running = is_running
        self._logger = logger or get_logger("stageflow")
        self._plugins: Dict[str, Any] = {}
        self._state: Dict[str, Dict[str, Any]] = {}
        self._installed: Set[str] = set()

    # --- registration ---

    async def _invoke(self, plugin: Any, method: str) -> None:
        fn = getattr(plugin, method, None)
        if fn is not None:
            await call_maybe_async(fn, self._owner)

    def _validate_name(self, plugin: Any) -> str:
        name = getattr(plugin, "name", None)
        if not name or not isinstance(name, str):
            raise plugin_unnamed()
        if name in self._plugins:
            raise plugin_duplicate(name)
        return name

    def _seed_state(self, name: str, plugin: Any) -> None:
        if name not in self._state:
            self._state[name] = dict(getattr(plugin, "state", None) or {})

    def register_all(self, plugins: Sequence[Any]) -> None:
        """Register a batch of plugins declared together (engine construction).

        Dependencies may point anywhere in the batch; the batch is registered
        in dependency order, or not at all.
        """
        batch: Dict[str, Any] = {}
        for plugin in plugins:
            name = self._validate_name(plugin)
            if name in batch:
                raise plugin_duplicate(name)
            batch[name] = plugin

        known = set(self._plugins) | set(batch)
        for name, plugin in batch.items():
            for dep in dependencies_of(plugin):
                if dep not in known:
                    raise plugin_dependency_missing(name, dep)

        graph = {name: dependencies_of(p) for name, p in {**self._plugins, **batch}.items()}
        for name in topological_order(graph):
            if name in batch:
                self._plugins[name] = batch[name]
                self._seed_state(name, batch[name])

    async def install(self, plugin: Any) -> None:
        name = self._validate_name(plugin)
        for dep in dependencies_of(plugin):
            if dep == name:
                raise plugin_cycle(name, [name, name])
            if dep not in self._plugins:
                raise plugin_dependency_missing(name, dep)

        self._plugins[name] = plugin
        self._seed_state(name, plugin)

        if not self._is_running():
            return

        try:
            await self._invoke(plugin, "install")
        except Exception as e:
            del self._plugins[name]
            self._state.pop(name, None)
            raise plugin_operation_failed(name, "install", e) from e
        self._installed.add(name)
        self._logger.info("Installed plugin: %s", name)

    async def uninstall(self, name: str) -> None:
        plugin = self._plugins.get(name)
        if plugin is None:
            raise plugin_not_installed(name)

        dependents = self.dependents(name)
        if dependents:
            raise plugin_has_dependents(name, dependents)

        if self.is_installed(name):
            try:
                await self._invoke(plugin, "uninstall")
            except Exception as e:
                raise plugin_operation_failed(name, "uninstall", e) from e

        self._installed.discard(name)
        self._state.pop(name, None)
        del self._plugins[name]
        self._logger.info("Uninstalled plugin: %s", name)

    def dependents(self, name: str) -> List[str]:
        return [n for n, p in self._plugins.items() if name in dependencies_of(p)]

    # --- ordering ---

    def sorted_plugins(self) -> List[Any]:
        graph = {name: dependencies_of(p) for name, p in self._plugins.items()}
        return [self._plugins[name] for name in topological_order(graph)]

    # --- engine start/stop ---

    async def install_all(self) -> None:
        for plugin in self.sorted_plugins():
            name = plugin.name
            if self.is_installed(name):
                continue
            self._seed_state(name, plugin)
            try:
                await self._invoke(plugin, "install")
            except Exception as e:
                err = plugin_operation_failed(name, "install", e)
                self._logger.error("Plugin install failed during engine start: %s", err.what)
                continue
            self._installed.add(name)

    async def uninstall_all(self) -> None:
        for plugin in reversed(self.sorted_plugins()):
            name = plugin.name
            if self.is_installed(name):
                try:
                    await self._invoke(plugin, "uninstall")
                except Exception as e:
                    err = plugin_operation_failed(name, "uninstall", e)
                    self._logger.error("Plugin uninstall failed during engine stop: %s", err.what)
            self._installed.discard(name)
            self._state.pop(name, None)

    # --- hooks ---

    async def execute_hooks(self, hook_name: str, context: Any) -> List[PluginError]:
        """Run ``hook_name`` on every plugin in dependency order.

        Only installed plugins are called. Each call is isolated: a failing
        hook is logged and the rest still run. The collected errors are
        returned, never raised.
        """
        errors: List[PluginError] = []
        for plugin in self.sorted_plugins():
            if not self.is_installed(plugin.name):
                continue
            hook = get_hook(plugin, hook_name)
            if hook is None:
                continue
            try:
                await call_maybe_async(hook, context)
            except Exception as e:
                err = plugin_hook_failed(plugin.name, hook_name, e)
                self._logger.error("%s", err.what)
                errors.append(err)
        return errors

    # --- lookup and state ---

    def get(self, name: str) -> Optional[Any]:
        return self._plugins.get(name)

    def names(self) -> List[str]:
        return list(self._plugins.keys())

    def is_installed(self, name: str) -> bool:
        return name in self._installed

    def get_state(self, name: str) -> Optional[Dict[str, Any]]:
        state = self._state.get(name)
        return dict(state) if state is not None else None

    def set_state(self, name: str, state: Mapping[str, Any]) -> None:
        """Merge ``state`` into the plugin's current state."""
        if name not in self._plugins:
            raise plugin_not_installed(name)
        self._state[name] = {**self._state.get(name, {}), **state}

    def all_state(self) -> Dict[str, Dict[str, Any]]:
        return {name: dict(state) for name, state in self._state.items()}

    def __contains__(self, name: object) -> bool:
        return name in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)
