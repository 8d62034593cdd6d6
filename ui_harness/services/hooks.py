from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, List

LOGGER = logging.getLogger("ui_harness.hooks")


@dataclass
class _RegisteredHook:
    key: str
    callback: Callable[..., Any]
    fired: bool = False


class ResourceHookRegistry:
    """Ordered registry of one-shot callbacks keyed by stable identifiers.

    Registering a key that is already present replaces the earlier hook, so code paths that run
    again on every retry never stack duplicates. A hook is marked fired and removed before it is
    invoked; it can never run twice for one launch.
    """

    def __init__(self, name: str = "hooks") -> None:
        self._name = name
        self._hooks: "OrderedDict[str, _RegisteredHook]" = OrderedDict()
        self._lock = threading.Lock()

    def register(self, key: str, callback: Callable[..., Any]) -> None:
        if not key:
            raise ValueError("Hook key must not be empty")
        with self._lock:
            # Re-registration moves the hook to the end like a fresh add.
            self._hooks.pop(key, None)
            self._hooks[key] = _RegisteredHook(key=key, callback=callback)

    def unregister(self, key: str) -> bool:
        with self._lock:
            return self._hooks.pop(key, None) is not None

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._hooks.keys())

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._hooks

    def __len__(self) -> int:
        with self._lock:
            return len(self._hooks)

    def fire(self, *args: Any, **kwargs: Any) -> int:
        """Invoke every registered hook in registration order and return how many ran.

        Errors raised by a hook propagate to the launcher; hooks not yet reached stay registered.
        """
        with self._lock:
            pending = list(self._hooks.values())
        fired = 0
        for hook in pending:
            with self._lock:
                current = self._hooks.get(hook.key)
                if current is not hook or hook.fired:
                    continue
                hook.fired = True
                del self._hooks[hook.key]
            LOGGER.debug("Firing %s hook %s", self._name, hook.key)
            hook.callback(*args, **kwargs)
            fired += 1
        return fired

    def copy(self) -> "ResourceHookRegistry":
        """Return a new registry holding the hooks that have not fired yet, in the same order."""
        registry = ResourceHookRegistry(self._name)
        with self._lock:
            for hook in self._hooks.values():
                registry._hooks[hook.key] = _RegisteredHook(key=hook.key, callback=hook.callback)
        return registry
