"""
Write-path cache invalidation bound to SQLModel/SQLAlchemy sessions.

Models are registered with the keys their rows feed. Session flushes
record which registered rows were inserted, updated or deleted; once the
transaction commits, every recorded key is invalidated. Rolling back the
outermost transaction discards the recorded keys, since the cached data is
still current. A savepoint rollback keeps them: keys of rows rolled back
with it are invalidated needlessly at commit, which is harmless.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Set, Type, Union

from sqlalchemy import event

logger = logging.getLogger(__name__)

KeyFunction = Callable[[Any], Union[str, Iterable[str]]]

_PENDING_KEYS = "readthrough.pending_invalidations"


class InvalidationRegistry:
    """
    Maps model classes to the cache keys their rows feed.

    Features:
    - Static keys ("cats") or per-row key functions (lambda cat: f"cat:{cat.id}")
    - Subclass-aware lookup along the model's MRO
    - Invalidation strictly after the outermost commit, none after its rollback
    """

    def __init__(self, cache: Any):
        """
        Args:
            cache: Object with a blocking ``invalidate(key)``, e.g. ReadThroughCache
        """
        self.cache = cache
        self._key_functions: Dict[type, List[KeyFunction]] = {}
        self._attached: List[Any] = []

    def register(self, model: Type[Any], keys: Union[str, Iterable[str], KeyFunction]) -> None:
        """
        Register the keys to invalidate when a row of model is written.

        Args:
            model: Mapped model class
            keys: A key, a list of keys, or a function of the written instance
        """
        if isinstance(keys, str):
            static_key = keys
            key_function: KeyFunction = lambda instance: static_key
        elif callable(keys):
            key_function = keys
        else:
            static_keys = list(keys)
            key_function = lambda instance: static_keys

        self._key_functions.setdefault(model, []).append(key_function)
        logger.info(f"Registered model for cache invalidation: {model.__name__}")

    def invalidates(self, model: Type[Any]) -> Callable[[KeyFunction], KeyFunction]:
        """Decorator form of register() for key functions."""
        def decorator(key_function: KeyFunction) -> KeyFunction:
            self.register(model, key_function)
            return key_function
        return decorator

    def keys_for(self, instance: Any) -> Set[str]:
        """All keys registered for instance's class and its bases."""
        keys: Set[str] = set()
        for klass in type(instance).__mro__:
            for key_function in self._key_functions.get(klass, ()):
                produced = key_function(instance)
                if isinstance(produced, str):
                    keys.add(produced)
                else:
                    keys.update(produced)
        return keys

    def invalidate_for(self, instance: Any) -> Set[str]:
        """Invalidate the keys of one instance right away; returns the keys."""
        keys = self.keys_for(instance)
        self._invalidate_all(keys)
        return keys

    def attach(self, target: Any) -> None:
        """
        Listen to a Session class, sessionmaker or Session instance.

        Args:
            target: Anything SQLAlchemy session events can be attached to
        """
        event.listen(target, "after_flush", self._collect)
        event.listen(target, "after_commit", self._invalidate_pending)
        event.listen(target, "after_soft_rollback", self._discard_pending)
        self._attached.append(target)
        logger.debug(f"Invalidation hooks attached to {target!r}")

    def detach(self, target: Any) -> None:
        """Remove the listeners installed by attach()."""
        event.remove(target, "after_flush", self._collect)
        event.remove(target, "after_commit", self._invalidate_pending)
        event.remove(target, "after_soft_rollback", self._discard_pending)
        self._attached.remove(target)

    def detach_all(self) -> None:
        for target in list(self._attached):
            self.detach(target)

    def _collect(self, session: Any, flush_context: Any) -> None:
        pending: Set[str] = session.info.setdefault(_PENDING_KEYS, set())
        for instance in (*session.new, *session.dirty, *session.deleted):
            pending.update(self.keys_for(instance))

    def _invalidate_pending(self, session: Any) -> None:
        # Releasing a SAVEPOINT also emits after_commit; wait for the outermost commit.
        if session.in_nested_transaction():
            return
        keys = session.info.pop(_PENDING_KEYS, None)
        if keys:
            self._invalidate_all(keys)

    def _discard_pending(self, session: Any, previous_transaction: Any) -> None:
        # A SAVEPOINT rollback leaves the outer transaction's writes to commit later.
        if previous_transaction.nested:
            return
        keys = session.info.pop(_PENDING_KEYS, None)
        if keys:
            logger.debug(f"Rollback discarded {len(keys)} pending invalidations")

    def _invalidate_all(self, keys: Iterable[str]) -> None:
        # Attempt every key; the first failure is raised once all were tried.
        first_error = None
        for key in sorted(keys):
            try:
                self.cache.invalidate(key)
            except Exception as e:
                logger.error(f"Failed to invalidate {key!r}: {e}")
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error
