import threading
from typing import Dict, List, Mapping, Optional, Tuple

from ..errors import InconsistentDomainVersionError


class DomainVersionRegistry:
    """
    Opset version per operator domain, fixed for the lifetime of a provider
    instance. A domain is recorded the first time a graph uses it; seeing a
    different version later means the instance is shared across sessions.
    """

    def __init__(self):
        self._versions: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _check(self, domain: str, version: int):
        existing = self._versions.get(domain)
        if existing is not None and existing != version:
            raise InconsistentDomainVersionError(
                f"Domain '{domain or 'ai.onnx'}' was seen at opset {existing} and now at "
                f"opset {version}. Please create one provider instance for each session."
            )

    def record(self, domain: str, version: int):
        with self._lock:
            self._check(domain, version)
            self._versions.setdefault(domain, version)

    def record_all(self, mapping: Mapping[str, int]):
        """Records a whole domain map. Nothing is recorded if any entry conflicts."""
        with self._lock:
            for domain, version in mapping.items():
                self._check(domain, version)
            for domain, version in mapping.items():
                self._versions.setdefault(domain, version)

    def get(self, domain: str) -> Optional[int]:
        return self._versions.get(domain)

    def items(self) -> List[Tuple[str, int]]:
        with self._lock:
            return list(self._versions.items())

    def __contains__(self, domain: str) -> bool:
        return domain in self._versions

    def __len__(self):
        return len(self._versions)
