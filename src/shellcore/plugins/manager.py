"""Plugin registry for commands, pipeline filters and transformers.

A plugin contributes up to three tables of named handlers:

- commands: callables run through PluginManager.execute_command()
- filters: predicates usable as Pipeline.filter("name")
- transformers: callables, or factories taking arguments and returning a
  callable, usable as Pipeline.transform("name", *args)

Name conflicts resolve last-registration-wins; the override is logged.
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

import structlog

from shellcore.core.errors import PluginError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from shellcore.shell import Shell

Handler = Callable[..., Any]


class ShellPlugin(ABC):
    """Base class for shellcore plugins."""

    description: str = ""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique plugin name."""

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""

    @property
    def commands(self) -> Mapping[str, Handler]:
        return {}

    @property
    def filters(self) -> Mapping[str, Handler]:
        return {}

    @property
    def transformers(self) -> Mapping[str, Handler]:
        return {}

    def install(self, shell: Shell | None) -> None:  # noqa: B027 - optional hook
        """Called once before the plugin's handlers are registered."""

    def uninstall(self) -> None:  # noqa: B027 - optional hook
        """Called after the plugin's handlers are unregistered."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, version={self.version!r})"


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class PluginManager:
    """Installs plugins and dispatches to their handlers.

    Args:
        shell: Shell passed to each plugin's install() hook
        logger: Optional structlog logger instance
    """

    def __init__(self, shell: Shell | None = None, logger: Any = None) -> None:
        self._shell = shell
        self._logger = logger or structlog.get_logger(__name__)
        self._plugins: dict[str, ShellPlugin] = {}
        # name -> (owning plugin name, handler)
        self._commands: dict[str, tuple[str, Handler]] = {}
        self._filters: dict[str, tuple[str, Handler]] = {}
        self._transformers: dict[str, tuple[str, Handler]] = {}

    def _register(
        self,
        table: dict[str, tuple[str, Handler]],
        kind: str,
        plugin: ShellPlugin,
        handlers: Mapping[str, Handler],
    ) -> None:
        for handler_name, handler in handlers.items():
            if not callable(handler):
                raise PluginError(
                    f"{kind.capitalize()} '{handler_name}' of plugin "
                    f"'{plugin.name}' is not callable",
                    "use",
                    details={"plugin": plugin.name, kind: handler_name},
                )
            previous = table.get(handler_name)
            if previous is not None:
                self._logger.warning(
                    "plugin.override",
                    kind=kind,
                    name=handler_name,
                    previous_plugin=previous[0],
                    plugin=plugin.name,
                )
            table[handler_name] = (plugin.name, handler)

    def use(self, plugin: ShellPlugin) -> None:
        """Install a plugin and register its handlers.

        Raises:
            PluginError: Missing name/version, already installed, a
                non-callable handler, or a failing install() hook
        """
        if not getattr(plugin, "name", None) or not getattr(plugin, "version", None):
            raise PluginError("Plugin must have name and version properties", "use")
        if plugin.name in self._plugins:
            raise PluginError(
                f"Plugin '{plugin.name}' is already installed",
                "use",
                details={"plugin": plugin.name},
            )

        try:
            plugin.install(self._shell)
        except Exception as exc:
            raise PluginError(
                f"Failed to install plugin '{plugin.name}': {exc}",
                "use",
                details={"plugin": plugin.name},
            ) from exc

        self._register(self._commands, "command", plugin, plugin.commands)
        self._register(self._filters, "filter", plugin, plugin.filters)
        self._register(self._transformers, "transformer", plugin, plugin.transformers)
        self._plugins[plugin.name] = plugin
        self._logger.info(
            "plugin.installed",
            plugin=plugin.name,
            version=plugin.version,
            commands=len(plugin.commands),
            filters=len(plugin.filters),
            transformers=len(plugin.transformers),
        )

    def unuse(self, plugin_name: str) -> None:
        """Uninstall a plugin.

        Only handlers still owned by this plugin are removed; names that a
        later plugin overrode stay registered to that later plugin.
        """
        plugin = self._plugins.get(plugin_name)
        if plugin is None:
            raise PluginError(
                f"Plugin '{plugin_name}' is not installed",
                "unuse",
                details={"plugin": plugin_name},
            )

        for table in (self._commands, self._filters, self._transformers):
            owned = [name for name, (owner, _) in table.items() if owner == plugin_name]
            for name in owned:
                del table[name]

        del self._plugins[plugin_name]
        try:
            plugin.uninstall()
        except Exception as exc:
            raise PluginError(
                f"Failed to uninstall plugin '{plugin_name}': {exc}",
                "unuse",
                details={"plugin": plugin_name},
            ) from exc
        self._logger.info("plugin.uninstalled", plugin=plugin_name)

    def get_plugin(self, name: str) -> ShellPlugin | None:
        return self._plugins.get(name)

    def list_plugins(self) -> list[ShellPlugin]:
        return list(self._plugins.values())

    def has_command(self, name: str) -> bool:
        return name in self._commands

    def get_commands(self) -> list[str]:
        return list(self._commands)

    def get_filters(self) -> list[str]:
        return list(self._filters)

    def get_transformers(self) -> list[str]:
        return list(self._transformers)

    async def execute_command(self, name: str, *args: Any, **kwargs: Any) -> Any:
        entry = self._commands.get(name)
        if entry is None:
            raise PluginError(f"Command '{name}' not found", "execute_command")
        try:
            return await _resolve(entry[1](*args, **kwargs))
        except PluginError:
            raise
        except Exception as exc:
            raise PluginError(
                f"Command '{name}' failed: {exc}",
                "execute_command",
                details={"command": name, "plugin": entry[0]},
            ) from exc

    def get_filter(self, name: str) -> Handler:
        entry = self._filters.get(name)
        if entry is None:
            raise PluginError(f"Filter '{name}' not found", "get_filter")
        return entry[1]

    async def apply_filter(self, name: str, item: Any, *args: Any) -> bool:
        handler = self.get_filter(name)
        try:
            return bool(await _resolve(handler(item, *args)))
        except Exception as exc:
            raise PluginError(
                f"Filter '{name}' failed: {exc}",
                "apply_filter",
                details={"filter": name},
            ) from exc

    def get_transformer(self, name: str, *args: Any) -> Handler:
        """Return a transformer, calling it as a factory when args are given.

        Raises:
            PluginError: Unknown name, or a factory that did not return a
                callable
        """
        entry = self._transformers.get(name)
        if entry is None:
            raise PluginError(f"Transformer '{name}' not found", "get_transformer")

        handler = entry[1]
        if not args:
            return handler

        try:
            produced = handler(*args)
        except Exception as exc:
            raise PluginError(
                f"Transformer factory '{name}' failed: {exc}",
                "get_transformer",
                details={"transformer": name},
            ) from exc
        if not callable(produced):
            raise PluginError(
                f"Transformer '{name}' with arguments did not return a function",
                "get_transformer",
                details={"transformer": name},
            )
        return produced
