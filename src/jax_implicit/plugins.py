"""Name-based plugin registries for rootfinders and linear solvers."""

from dataclasses import dataclass
from importlib.metadata import entry_points
import inspect
import logging
from typing import Any, Callable, Optional

from .errors import UnknownPluginError

logger = logging.getLogger(__name__)

ENTRY_POINT_PREFIX = "jax_implicit"


@dataclass(frozen=True)
class Plugin:
    """
    A registered plugin.

    Attributes:
        name: Name the plugin is looked up by
        factory: Callable building an instance of the plugin
        doc: Human-readable description
    """

    name: str
    factory: Callable[..., Any]
    doc: str = ""


class PluginRegistry:
    """
    Process-wide map from plugin names to factories.

    Plugins are either registered explicitly with `register`, or discovered
    lazily from the entry-point group `jax_implicit.<kind>` the first time
    their name is requested.

    Example:
        ```python
        from jax_implicit.rootfinders import registry

        registry.register("my_newton", MyNewton)
        solver = registry.instantiate("my_newton", oracle, {"max_iter": 10})
        ```
    """

    def __init__(self, kind: str):
        self.kind = kind
        self._plugins: dict[str, Plugin] = {}

    @property
    def group(self) -> str:
        """Entry-point group searched during lazy discovery."""
        return f"{ENTRY_POINT_PREFIX}.{self.kind}"

    def register(
        self, name: str, factory: Callable[..., Any], doc: Optional[str] = None
    ) -> Plugin:
        """
        Register a factory under `name`, replacing any existing plugin.

        Args:
            name: Plugin name
            factory: Callable building the plugin instance
            doc: Description. Defaults to the factory's docstring.

        Returns:
            The registered plugin record
        """
        if doc is None:
            doc = inspect.cleandoc(factory.__doc__ or "")
        if name in self._plugins:
            logger.debug("Replacing %s plugin '%s'", self.kind, name)
        plugin = Plugin(name=name, factory=factory, doc=doc)
        self._plugins[name] = plugin
        return plugin

    def _discover(self, name: str) -> Optional[Plugin]:
        for ep in entry_points(group=self.group):
            if ep.name == name:
                logger.debug("Loading %s plugin '%s' from %s", self.kind, name, ep.value)
                return self.register(name, ep.load())
        return None

    def load(self, name: str) -> Plugin:
        """
        Look up a plugin, discovering it from entry points if needed.

        Raises:
            UnknownPluginError: If no plugin of that name exists
        """
        plugin = self._plugins.get(name)
        if plugin is None:
            plugin = self._discover(name)
        if plugin is None:
            raise UnknownPluginError(self.kind, name, self.names())
        return plugin

    def has(self, name: str) -> bool:
        """Whether a plugin is registered or discoverable under `name`."""
        try:
            self.load(name)
        except UnknownPluginError:
            return False
        return True

    def doc(self, name: str) -> str:
        """Documentation string of a plugin."""
        return self.load(name).doc

    def instantiate(self, name: str, *args, **kwargs) -> Any:
        """Build a new instance of the plugin `name`."""
        return self.load(name).factory(*args, **kwargs)

    def names(self) -> list[str]:
        """Sorted names of the registered plugins."""
        return sorted(self._plugins)

    def __contains__(self, name: str) -> bool:
        return name in self._plugins

    def __repr__(self) -> str:
        return f"PluginRegistry(kind={self.kind!r}, plugins={self.names()})"
