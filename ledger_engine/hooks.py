"""
Change Hooks Module

Lets dependent services react to a record change inside the same atomic
unit that made it. Listeners receive the record before and after the
change (None for a create or a delete). A listener that raises aborts the
change.
"""

from typing import Any, Callable, List, Optional

ChangeListener = Callable[[Optional[Any], Optional[Any]], None]


class ChangeHooksMixin:
    """Mixin adding change listeners to a manager"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._listeners: List[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback run after every change, before the unit commits"""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, old: Optional[Any], new: Optional[Any]) -> None:
        for listener in list(self._listeners):
            listener(old, new)
