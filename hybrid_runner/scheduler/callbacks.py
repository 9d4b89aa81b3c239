"""CallbackRegistry — stable integer handles for module-level async callbacks.

Work scheduled by the runner may execute in a fresh process that shares no
objects with the one that registered it.  A callback therefore has to be
something that can be found again by name: a module-level (or class-level
static) coroutine function.  Its textual reference (``"package.module:func"``)
is recorded in the key-value store under a deterministic integer handle.
"""

from __future__ import annotations

import hashlib
import inspect
import json
import logging
from typing import TYPE_CHECKING

from apscheduler.util import obj_to_ref, ref_to_obj

from hybrid_runner.scheduler.constants import CALLBACK_REFS_KEY
from hybrid_runner.scheduler.errors import CallbackUnresolvableError, InvalidCallbackError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from hybrid_runner.scheduler.kvstore import KeyValueStore

    TaskCallback = Callable[[], Awaitable[bool]]

logger = logging.getLogger(__name__)


def callback_reference(fn: Callable) -> str:
    """Return the textual reference for *fn* or raise ``InvalidCallbackError``."""
    if inspect.ismethod(fn) and not isinstance(fn.__self__, type):
        msg = f"Bound instance methods are not supported: {fn!r}"
        raise InvalidCallbackError(msg)
    if not inspect.iscoroutinefunction(fn):
        msg = f"Task callback must be an async function: {fn!r}"
        raise InvalidCallbackError(msg)
    try:
        ref = obj_to_ref(fn)
        found = ref_to_obj(ref)
    except (ValueError, LookupError, ImportError) as exc:
        msg = (
            "The callback must be a module-level or static async function. "
            f"Closures, lambdas and partials are not supported: {exc}"
        )
        raise InvalidCallbackError(msg) from exc
    if found != fn:
        msg = f"Callback {fn!r} does not resolve back to itself via {ref!r}"
        raise InvalidCallbackError(msg)
    return ref


def handle_for_reference(ref: str) -> int:
    """Deterministic 48-bit handle for a textual reference."""
    digest = hashlib.blake2b(ref.encode(), digest_size=6).digest()
    return int.from_bytes(digest, "big")


class CallbackRegistry:
    """Maps callbacks to opaque integer handles and back."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv

    async def _load_refs(self) -> dict[str, str]:
        raw = await self._kv.get(CALLBACK_REFS_KEY)
        if not raw:
            return {}
        try:
            refs = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Callback reference table is corrupt; starting fresh")
            return {}
        return refs if isinstance(refs, dict) else {}

    async def resolve(self, fn: Callable) -> int:
        """Return the handle for *fn*, recording it for later lookup."""
        ref = callback_reference(fn)
        handle = handle_for_reference(ref)
        refs = await self._load_refs()
        if refs.get(str(handle)) != ref:
            refs[str(handle)] = ref
            await self._kv.set(CALLBACK_REFS_KEY, json.dumps(refs))
            logger.debug("Recorded callback handle %d -> %s", handle, ref)
        return handle

    async def lookup(self, handle: int) -> TaskCallback:
        """Return the callback for *handle*.

        Raises ``CallbackUnresolvableError`` if the handle is unknown or its
        reference no longer imports (e.g. the code changed since registration).
        """
        refs = await self._load_refs()
        ref = refs.get(str(handle))
        if ref is None:
            msg = f"No callback recorded for handle {handle}"
            raise CallbackUnresolvableError(msg)
        try:
            fn = ref_to_obj(ref)
        except (ValueError, LookupError, ImportError) as exc:
            msg = f"Callback {ref} for handle {handle} cannot be imported: {exc}"
            raise CallbackUnresolvableError(msg) from exc
        if not callable(fn):
            msg = f"Callback {ref} for handle {handle} is not callable"
            raise CallbackUnresolvableError(msg)
        return fn
