# actions.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

from .errors import StepExecutionError


@dataclass(frozen=True)
class ActionCall:
    """What a `uses:` step hands to its action."""
    ref: str
    inputs: Dict[str, str]
    env: Dict[str, str]
    workspace: Path


@dataclass
class ActionResult:
    exit_code: int = 0
    outputs: Dict[str, str] = field(default_factory=dict)
    output: str = ""


ActionFn = Callable[[ActionCall], ActionResult]

# handled by the execution engine itself (they need the run's stores)
BUILTIN_ACTIONS = frozenset({"checkout", "cache", "upload-artifact", "download-artifact"})
_BUILTIN_OWNERS = ("flowci/", "actions/")


def split_ref(ref: str) -> tuple[str, Optional[str]]:
    """'actions/cache@v4' -> ('actions/cache', 'v4')"""
    name, sep, version = ref.strip().partition("@")
    return name, (version if sep else None)


def builtin_name(ref: str) -> Optional[str]:
    """Name of the built-in action `ref` points at, if any."""
    name, _version = split_ref(ref)
    for owner in _BUILTIN_OWNERS:
        if name.startswith(owner) and name[len(owner):] in BUILTIN_ACTIONS:
            return name[len(owner):]
    return None


class ActionResolver:
    """
    Resolves `uses:` references to callables and invokes them.

    Fetching community or custom actions is somebody else's job: register
    the callables you want a workflow to be able to use.

        resolver = ActionResolver()

        @resolver.action("acme/notify")
        def notify(call: ActionCall) -> ActionResult:
            ...
    """

    def __init__(self, actions: Optional[Dict[str, ActionFn]] = None):
        self._actions: Dict[str, ActionFn] = {}
        for ref, fn in (actions or {}).items():
            self.register(ref, fn)

    def register(self, ref: str, fn: ActionFn) -> None:
        self._actions[ref.strip()] = fn

    def action(self, ref: str) -> Callable[[ActionFn], ActionFn]:
        def deco(fn: ActionFn) -> ActionFn:
            self.register(ref, fn)
            return fn
        return deco

    def resolve(self, ref: str) -> Optional[ActionFn]:
        # exact ref (with version) first, then the unversioned name
        ref = ref.strip()
        if ref in self._actions:
            return self._actions[ref]
        name, _version = split_ref(ref)
        return self._actions.get(name)

    def invoke(self, ref: str, inputs: Dict[str, str], env: Dict[str, str], workspace: Path) -> ActionResult:
        fn = self.resolve(ref)
        if fn is None:
            raise StepExecutionError(f"unknown action {ref!r}", exit_code=127)

        result = fn(ActionCall(ref=ref, inputs=dict(inputs), env=dict(env), workspace=workspace))
        if not isinstance(result, ActionResult):
            raise StepExecutionError(
                f"action {ref!r} returned {type(result).__name__}, expected ActionResult",
                exit_code=1,
            )
        return result
