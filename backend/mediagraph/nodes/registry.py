"""Executor registry with auto-discovery."""
import importlib
import pkgutil

from .base import BaseExecutor, ExecutorDefinition


class NodeRegistry:
    """Singleton registry mapping node type strings to BaseExecutor subclasses."""

    _executors: dict[str, type[BaseExecutor]] = {}

    @classmethod
    def register(cls, node_type: str | None = None):
        """Decorator to register an executor class.

        Usage:
            @NodeRegistry.register(NodeKind.PROMPT)
            class PromptExecutor(DerivationExecutor):
                ...
        """
        def decorator(executor_cls: type[BaseExecutor]) -> type[BaseExecutor]:
            name = node_type or executor_cls.__name__
            cls._executors[str(getattr(name, "value", name))] = executor_cls
            return executor_cls
        return decorator

    @classmethod
    def get(cls, node_type: str) -> type[BaseExecutor]:
        if node_type not in cls._executors:
            raise KeyError(f"Unknown node type: {node_type}")
        return cls._executors[node_type]

    @classmethod
    def lookup(cls, node_type: str) -> type[BaseExecutor] | None:
        return cls._executors.get(node_type)

    @classmethod
    def create(cls, node_type: str) -> BaseExecutor:
        return cls.get(node_type)()

    @classmethod
    def all_definitions(cls) -> dict[str, ExecutorDefinition]:
        return {
            name: executor_cls.get_definition(name)
            for name, executor_cls in cls._executors.items()
        }

    @classmethod
    def discover(cls, package_name: str) -> None:
        """Import all modules in the given package to trigger @register decorators."""
        try:
            package = importlib.import_module(package_name)
        except ImportError:
            return
        if not hasattr(package, "__path__"):
            return
        for _, module_name, _ in pkgutil.iter_modules(package.__path__):
            if module_name.startswith("_") or module_name in ("base", "registry"):
                continue
            importlib.import_module(f"{package_name}.{module_name}")

    @classmethod
    def clear(cls) -> None:
        cls._executors.clear()
