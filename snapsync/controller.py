"""Event hooks wrapped around a unit of work.

A ControllerBuilder collects handlers for named events and produces an
immutable Controller. The controller runs work through try_(), firing:

    prepare   before the work runs; a handler may return abort() to cancel
    success   after the work completed without raising or aborting; may abort too
    failure   when the work raised; the error is appended to the arguments
    finish    always, exactly once, at the end of try_()

Work ends early by returning abort(). A persistent abort turns every later
try_() on the same controller into a no-op.
"""

import logging
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

PREPARE = "prepare"
SUCCESS = "success"
FAILURE = "failure"
FINISH = "finish"


class Aborted:
    """Marker returned by work, or a prepare or success handler, to end try_() early."""

    def __init__(self, persistent: bool = False):
        self.persistent = persistent

    def __repr__(self) -> str:
        return f"Aborted(persistent={self.persistent})"


def abort(persistent: bool = False) -> Aborted:
    """Create the marker that ends the current try_() when returned."""
    return Aborted(persistent)


class Controller:
    """Fires registered event handlers around guarded units of work.

    Not safe for overlapping use from several threads.
    """

    def __init__(self, events: Dict[str, List[Callable]]):
        self._events = MappingProxyType(
            {event: tuple(handlers) for event, handlers in events.items()}
        )
        self._aborted = False

    @classmethod
    def build(cls, configure: Optional[Callable[["ControllerBuilder"], None]] = None) -> "Controller":
        """Build a controller, letting `configure` register handlers first."""
        builder = ControllerBuilder(cls)
        if configure is not None:
            configure(builder)
        return builder.build()

    @property
    def events(self):
        return self._events

    @property
    def aborted(self) -> bool:
        return self._aborted

    def _invoke(self, event: str, scope: Any, args: tuple) -> Tuple[bool, Optional[Aborted]]:
        """
        Call the handlers for an event in order, stopping at the first one that returns abort().

        Returns:
            Whether any handler is registered, and the abort marker if one was returned
        """
        handlers = self._events.get(event)
        if not handlers:
            return False, None

        for handler in handlers:
            if scope is not None:
                result = handler(scope, *args)
            else:
                result = handler()
            if isinstance(result, Aborted):
                return True, result
        return True, None

    def fire(self, event: str, scope: Any = None, *args) -> bool:
        """
        Call every handler registered for `event` in registration order.

        Handlers are called as handler(scope, *args) when a scope is given and
        with no arguments otherwise. A handler returning abort() ends the event.

        Returns:
            False if no handler is registered for the event, True otherwise
        """
        handled, _ = self._invoke(event, scope, args)
        return handled

    def abort(self, persistent: bool = False) -> Aborted:
        """Create an abort marker; see abort()."""
        return abort(persistent)

    def _stop(self, marker: Aborted) -> None:
        if marker.persistent:
            self._aborted = True
        logger.debug(f"Work aborted: {marker!r}")

    def try_(self, work: Callable[[], Any], scope: Any = None, *args) -> Any:
        """
        Run `work` surrounded by the prepare/success/failure/finish events.

        An abort() returned by a prepare handler, the work or a success
        handler skips everything up to the finish event.

        Returns:
            The value returned by work, or None if it aborted, failed and
            the failure was handled, or the controller is aborted.
        """
        if self._aborted:
            return None

        try:
            _, marker = self._invoke(PREPARE, scope, args)
            if marker is not None:
                self._stop(marker)
                return None

            outcome = work()
            if isinstance(outcome, Aborted):
                self._stop(outcome)
                return None

            _, marker = self._invoke(SUCCESS, scope, args)
            if marker is not None:
                self._stop(marker)
                return None
            return outcome
        except Exception as error:
            # Propagate the error unless a failure handler dealt with it.
            if not self.fire(FAILURE, scope, *args, error):
                raise
            return None
        finally:
            self.fire(FINISH, scope, *args)


class ControllerBuilder:
    """Collects event handlers for a Controller."""

    def __init__(self, controller_class=Controller):
        self._controller_class = controller_class
        self._events: Dict[str, List[Callable]] = {}
        self._built = False

    def on(self, event: str, handler: Optional[Callable] = None):
        """
        Register a handler for an event.

        Can be used directly, on(event, handler), or as a decorator, @on(event).
        """
        if handler is None:
            def decorator(function: Callable) -> Callable:
                self.on(event, function)
                return function
            return decorator

        if self._built:
            raise RuntimeError(f"Cannot register '{event}' handler: controller already built")

        self._events.setdefault(event, []).append(handler)
        return handler

    def build(self) -> Controller:
        """Create the controller; no handlers may be added afterwards."""
        if self._built:
            raise RuntimeError("Controller already built")
        self._built = True
        return self._controller_class(self._events)
