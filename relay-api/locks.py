import threading
from typing import Dict, Optional

from policy import ConflictError


def target_key(service: str, environment: str) -> str:
    return f"{service}:{environment}"


class TargetLocks:
    """In-process ownership of (service, environment) targets.

    A target is owned by at most one deployment id. Acquiring a target that
    the same deployment already owns is a no-op, so recovery can re-acquire.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owners: Dict[str, str] = {}

    def acquire(self, service: str, environment: str, owner: str) -> None:
        key = target_key(service, environment)
        with self._lock:
            current = self._owners.get(key)
            if current is not None and current != owner:
                raise ConflictError(f"A deployment is already in progress for {service} in {environment}")
            self._owners[key] = owner

    def release(self, service: str, environment: str, owner: str) -> bool:
        key = target_key(service, environment)
        with self._lock:
            if self._owners.get(key) != owner:
                return False
            del self._owners[key]
            return True

    def owner(self, service: str, environment: str) -> Optional[str]:
        with self._lock:
            return self._owners.get(target_key(service, environment))

    def clear(self) -> None:
        with self._lock:
            self._owners.clear()
