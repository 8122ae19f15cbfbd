"""
=====================================================
Dynamic AI Calling Platform - Function Registry
=====================================================
Name -> function lookup. User-defined functions shadow built-ins
of the same name.
"""

from typing import Dict, Iterable, List, Optional
from loguru import logger

from .function_base import FunctionDescriptor, FunctionNotFound


class FunctionRegistry:
    """Two-tier registry: dynamic first, then built-in"""

    def __init__(self, builtins: Optional[Iterable[FunctionDescriptor]] = None):
        self._builtin: Dict[str, FunctionDescriptor] = {}
        self._dynamic: Dict[str, FunctionDescriptor] = {}
        for function in builtins or []:
            self.register_builtin(function)

    def register_builtin(self, function: FunctionDescriptor) -> None:
        self._builtin[function.name] = function

    def register_dynamic(self, function: FunctionDescriptor) -> None:
        if function.name in self._builtin:
            logger.info(f"Functions: Dynamic '{function.name}' shadows the built-in")
        self._dynamic[function.name] = function
        logger.info(f"Functions: Registered dynamic function '{function.name}'")

    def unregister_dynamic(self, name: str) -> bool:
        return self._dynamic.pop(name, None) is not None

    def clear_dynamic(self) -> None:
        self._dynamic.clear()

    def resolve(self, name: str) -> FunctionDescriptor:
        """
        Find a function by name

        Raises:
            FunctionNotFound: Neither tier has it
        """
        function = self._dynamic.get(name) or self._builtin.get(name)
        if function is None:
            raise FunctionNotFound(f"Function '{name}' not found")
        return function

    def has(self, name: str) -> bool:
        return name in self._dynamic or name in self._builtin

    def names(self) -> List[str]:
        ordered = list(self._dynamic)
        ordered.extend(name for name in self._builtin if name not in self._dynamic)
        return ordered

    def schemas(self, allowed: Optional[Iterable[str]] = None) -> List[dict]:
        """
        Function-calling schemas for the model

        Args:
            allowed: Restrict to these names (agent-level enablement); None = all
        """
        wanted = set(allowed) if allowed is not None else None
        return [
            self.resolve(name).schema()
            for name in self.names()
            if wanted is None or name in wanted
        ]

    def __len__(self) -> int:
        return len(self.names())
